# backend/wsgi.py
from stocksync import create_app

app = create_app()
