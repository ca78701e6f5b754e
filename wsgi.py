"""
WSGI Entry Point for SendFlow
"""
import os

from sendflow import create_app

app = create_app(os.getenv('FLASK_CONFIG', 'production'))

if __name__ == '__main__':
    app.run()
