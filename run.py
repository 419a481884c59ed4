"""
Development server entry point.

Usage:
    python run.py

Settings come from the environment or a .env file (see bonsai/config.py).
"""
from bonsai import create_app
from bonsai.config import settings

app = create_app()


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000, debug=settings.debug)
