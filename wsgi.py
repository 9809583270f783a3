"""
wsgi.py — ASGI entry point for production servers (Uvicorn, Gunicorn + UvicornWorker)

Usage:
  uvicorn wsgi:application --host 0.0.0.0 --port 8000
  gunicorn -k uvicorn.workers.UvicornWorker wsgi:application

The app object is imported here so that:
  1. The module name is stable regardless of how the server is invoked.
  2. app.py can still be run directly during development (`python app.py`).
"""

from app import app as application  # noqa: F401  (servers look for 'application')

if __name__ == '__main__':
    import uvicorn
    uvicorn.run(application, host='0.0.0.0', port=8000)
