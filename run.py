"""
SendFlow Application Entry Point
"""
from sendflow import create_app

app = create_app('development')

if __name__ == '__main__':
    # Development only; serve wsgi.py in production
    app.run(host='0.0.0.0', port=5001, debug=False)
