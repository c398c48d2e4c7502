# settlement_api/wsgi.py
from settlement_api import create_app

app = create_app()
