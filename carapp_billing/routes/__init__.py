from carapp_billing.routes.billing import billing_bp
from carapp_billing.routes.gateway import gateway_bp
from carapp_billing.routes.health import health_bp


def register_blueprints(app):
    app.register_blueprint(health_bp)
    app.register_blueprint(gateway_bp)
    app.register_blueprint(billing_bp)
