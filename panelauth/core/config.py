import os
from datetime import timedelta

APP_SECRET = os.getenv("APP_SECRET", "dev-change-me")
JWT_SECRET = os.getenv("JWT_SECRET", "dev-change-me-too")
JWT_ALG = "HS256"

# Key material for encrypting TOTP secrets at rest
TWO_FACTOR_SECRET_KEY = os.getenv("TWO_FACTOR_SECRET_KEY") or JWT_SECRET

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./panel.db")
# "database" or "memory"; memory is only safe with a single worker process
CHALLENGE_STORE_BACKEND = os.getenv("CHALLENGE_STORE_BACKEND", "database")

SESSION_TTL = timedelta(days=2)
SESSION_TTL_REMEMBER = timedelta(days=7)
MFA_CHALLENGE_TTL = 300
PASSKEY_CHALLENGE_TTL = 300
PENDING_OAUTH_TTL = 600
# Seconds between sweeps of expired challenge-store entries
CHALLENGE_PURGE_INTERVAL = 300
TRUSTED_DEVICE_TTL = timedelta(days=30)

SITE_NAME = os.getenv("SITE_NAME", "Soga Panel")
# Shown in authenticator app
ISSUER_NAME = os.getenv("ISSUER_NAME", SITE_NAME)

# Passkeys
PASSKEY_RP_ID = os.getenv("PASSKEY_RP_ID", "")
PASSKEY_ORIGIN = os.getenv("PASSKEY_ORIGIN", "")

# Google OAuth
GOOGLE_CLIENT_IDS = [
    cid.strip()
    for cid in (os.getenv("GOOGLE_CLIENT_IDS") or os.getenv("GOOGLE_CLIENT_ID", "")).split(",")
    if cid.strip()
]

# GitHub OAuth
GITHUB_CLIENT_ID = os.getenv("GITHUB_CLIENT_ID", "")
GITHUB_CLIENT_SECRET = os.getenv("GITHUB_CLIENT_SECRET", "")
GITHUB_REDIRECT_URI = os.getenv("GITHUB_REDIRECT_URI", "")

# Cloudflare Turnstile; empty disables the check
TURNSTILE_SECRET_KEY = os.getenv("TURNSTILE_SECRET_KEY", "")

# "0" closed, "1" open, "2" invite only
REGISTER_MODE = os.getenv("REGISTER_MODE", "1")
# "1" requires a mailed code at registration when mail is configured
REGISTER_EMAIL_VERIFICATION = os.getenv("REGISTER_EMAIL_VERIFICATION", "1")
EMAIL_CODE_EXPIRE_MINUTES = int(os.getenv("EMAIL_CODE_EXPIRE_MINUTES", "10"))
EMAIL_CODE_COOLDOWN = int(os.getenv("EMAIL_CODE_COOLDOWN", "60"))
EMAIL_CODE_ATTEMPT_LIMIT = int(os.getenv("EMAIL_CODE_ATTEMPT_LIMIT", "5"))

# Mail; empty SMTP_HOST disables outgoing mail
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
FROM_EMAIL = os.getenv("FROM_EMAIL", SMTP_USER or "no-reply@example.com")
FROM_NAME = os.getenv("FROM_NAME", SITE_NAME)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:8000").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
