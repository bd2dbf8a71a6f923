import os

# ----------------------------------------------------------------------------
# Database
# ----------------------------------------------------------------------------

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# ----------------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------------

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days

# ----------------------------------------------------------------------------
# Payment gateway (Cashfree PG)
# ----------------------------------------------------------------------------

CASHFREE_APP_ID = os.getenv("CASHFREE_APP_ID", "")
CASHFREE_SECRET_KEY = os.getenv("CASHFREE_SECRET_KEY", "")
CASHFREE_ENV = os.getenv("CASHFREE_ENV", "sandbox")
CASHFREE_API_VERSION = os.getenv("CASHFREE_API_VERSION", "2022-09-01")
CASHFREE_TIMEOUT = float(os.getenv("CASHFREE_TIMEOUT", "15"))

ORDER_CURRENCY = os.getenv("ORDER_CURRENCY", "INR")

# Base URLs handed to the gateway; the request base URL is used when unset.
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN")
BACKEND_ORIGIN = os.getenv("BACKEND_ORIGIN")

# ----------------------------------------------------------------------------
# Runtime
# ----------------------------------------------------------------------------

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
PORT = int(os.getenv("PORT", 8000))
