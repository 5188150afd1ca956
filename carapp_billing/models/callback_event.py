from carapp_billing.extensions import db
from carapp_billing.utils.time import utcnow


class GatewayCallbackEvent(db.Model):
    """Receipt log of settlement callbacks, one row per (order_id, status)."""

    __tablename__ = "gateway_callback_events"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(100), nullable=False)
    status = db.Column(db.String(30), nullable=False)
    payload_hash = db.Column(db.String(64), nullable=True)
    received_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)
    is_processed = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        db.Index("idx_callback_order_status", "order_id", "status", unique=True),
    )
