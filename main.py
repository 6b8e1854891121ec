import os

from projecthub_auth import create_app

app = create_app()

if __name__ == "__main__":
    # In production, run with Gunicorn behind a TLS-terminating proxy
    app.run(
        host=os.getenv('HOST', '127.0.0.1'),
        port=int(os.getenv('PORT', '5000')),
        debug=app.config['DEBUG'],
    )
