"""
Configuration for the marketplace service.

Runtime settings come from environment variables; business constants that
define money movement are fixed here and are not read from the environment.
"""

import os
import secrets
from decimal import Decimal

# Platform keeps 10% of every escrow on release
PLATFORM_FEE_RATE = Decimal('0.10')
ESCROW_CURRENCY = 'ETB'


def _database_url():
    url = os.environ.get('DATABASE_URL', 'sqlite:///marketplace.db')
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql+psycopg2://', 1)
    elif url.startswith('postgresql://'):
        url = url.replace('postgresql://', 'postgresql+psycopg2://', 1)
    return url


def _secret_key():
    key = os.environ.get('SESSION_SECRET') or os.environ.get('SECRET_KEY')
    if not key:
        # In production, always set SESSION_SECRET or SECRET_KEY
        key = secrets.token_hex(32)
        print("WARNING: Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY environment variable in production!")
    return key


class Config:
    """Settings read once at application start"""
    SECRET_KEY = _secret_key()
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    SESSION_COOKIE_SECURE = os.environ.get('FLASK_ENV') == 'production'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    ALLOWED_ORIGINS = os.environ.get('ALLOWED_ORIGINS', '*').split(',')

    # Payment gateway
    CHAPA_API_URL = os.environ.get('CHAPA_API_URL', 'https://api.chapa.co/v1/transaction')
    CHAPA_SECRET_KEY = os.environ.get('CHAPA_SECRET_KEY', '')
    CHAPA_WEBHOOK_SECRET = os.environ.get('CHAPA_WEBHOOK_SECRET', '')
    CHAPA_RETURN_URL = os.environ.get('CHAPA_RETURN_URL', 'http://localhost:3000/payments/chapa/return')
    CHAPA_WEBHOOK_URL = os.environ.get('CHAPA_WEBHOOK_URL', 'http://localhost:5000/api/payments/chapa/webhook')
    PAYMENT_GATEWAY_TIMEOUT = float(os.environ.get('PAYMENT_GATEWAY_TIMEOUT', 30))

    # Notifications
    NOTIFICATION_DEDUP_SECONDS = int(os.environ.get('NOTIFICATION_DEDUP_SECONDS', 5))

    # Background reconciliation of PENDING escrows
    ENABLE_SCHEDULER = os.environ.get('ENABLE_SCHEDULER', 'false').lower() == 'true'
    ESCROW_RECONCILE_MINUTES = int(os.environ.get('ESCROW_RECONCILE_MINUTES', 10))
    ESCROW_RECONCILE_GRACE_MINUTES = int(os.environ.get('ESCROW_RECONCILE_GRACE_MINUTES', 5))

    LOG_DIR = os.environ.get('LOG_DIR')


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SESSION_COOKIE_SECURE = False
    CHAPA_SECRET_KEY = 'test-secret'
    CHAPA_WEBHOOK_SECRET = ''
    ENABLE_SCHEDULER = False
    LOG_DIR = None
