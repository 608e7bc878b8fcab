import os

from app import create_app

# Gunicorn on Render uses this object
app = create_app()


if __name__ == "__main__":
    # Local development entrypoint
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
