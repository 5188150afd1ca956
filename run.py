import os

from dotenv import load_dotenv

load_dotenv()

from carapp_billing import create_app  # noqa: E402

app = create_app()


if __name__ == "__main__":
    app.run(
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        debug=app.config.get("DEBUG", False),
    )
