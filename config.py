import os
from datetime import timedelta


class Config:
    SECRET_KEY = os.environ.get('VOTING_SECRET_KEY', 'change-me-in-production')
    SQLALCHEMY_DATABASE_URI = os.environ.get('VOTING_DATABASE_URL', 'sqlite:///voting.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session Configuration
    PERMANENT_SESSION_LIFETIME = timedelta(minutes=30)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Voting credential policy. The TTL is both the issuance window and the
    # hard ceiling measured from creation time.
    VOTING_CREDENTIAL_TTL = timedelta(
        seconds=int(os.environ.get('VOTING_CREDENTIAL_TTL_SECONDS', 5 * 60)))
    CREDENTIAL_PAYLOAD_PREFIX = 'ITERA'
    REDEEM_CODE_LENGTH = 8

    LOG_LEVEL = os.environ.get('VOTING_LOG_LEVEL', 'INFO')

    # Bootstrap account created by init_db.py
    SUPER_ADMIN_EMAIL = os.environ.get('VOTING_SUPER_ADMIN_EMAIL', 'superadmin@example.ac.id')
    SUPER_ADMIN_PASSWORD = os.environ.get('VOTING_SUPER_ADMIN_PASSWORD')


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    LOG_LEVEL = 'DEBUG'
