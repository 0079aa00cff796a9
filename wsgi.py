"""
WSGI entry point for the SkillStaff API.
Runs Flask's built-in server in development and Waitress everywhere else.
"""

import os
from dotenv import load_dotenv
from app import app

load_dotenv()

if __name__ == "__main__":
    env = os.getenv('FLASK_ENV', 'production')
    host = os.getenv('FLASK_HOST', '127.0.0.1')
    port = int(os.getenv('FLASK_PORT', 5000))

    if env == 'development':
        app.run(host=host, port=port, debug=True)
    else:
        from waitress import serve
        app.logger.info(f"Starting Waitress server on {host}:{port}")
        serve(
            app,
            host=host,
            port=port,
            threads=int(os.getenv('WAITRESS_THREADS', 4)),
            connection_limit=int(os.getenv('WAITRESS_CONNECTION_LIMIT', 1000)),
            channel_timeout=int(os.getenv('WAITRESS_CHANNEL_TIMEOUT', 30))
        )
