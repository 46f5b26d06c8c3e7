#!/usr/bin/env python3
"""
Entry point for the FriLAN API.

Usage:
    python run.py

Environment Variables:
    FLASK_ENV: development, production or testing (default: development)
    PORT: Port to run on (default: 5000)
    DATABASE_URL: SQLAlchemy database URL
    JWT_SECRET: Secret used to sign access tokens (required in production)
"""
import os

from frilan.app import create_app


def run_api():
    """Run the API server."""
    app = create_app()
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    print(f"Starting FriLAN API on port {port}...")
    app.run(host='0.0.0.0', port=port, debug=debug, threaded=True)


if __name__ == '__main__':
    run_api()
