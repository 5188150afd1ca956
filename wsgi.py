import os
from dotenv import load_dotenv

load_dotenv()

from carapp_billing import create_app

config = os.getenv("APP_ENV", "production")

app = create_app(config)

app.logger.info(f"Running in {config} mode")
