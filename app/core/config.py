import os

# ✅ Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./assessa.db")
RUN_MIGRATIONS = os.getenv("RUN_MIGRATIONS", "0") == "1"

# ✅ Security
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")

# ✅ Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ✅ Frontend / CORS
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

# ✅ Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

# Products (one per paid plan)
STRIPE_PRODUCT_ID_BASIC = os.getenv("STRIPE_PRODUCT_ID_BASIC")
STRIPE_PRODUCT_ID_ESSENTIALS = os.getenv("STRIPE_PRODUCT_ID_ESSENTIALS")
STRIPE_PRODUCT_ID_PLUS = os.getenv("STRIPE_PRODUCT_ID_PLUS")
STRIPE_PRODUCT_ID_ADVANCED = os.getenv("STRIPE_PRODUCT_ID_ADVANCED")

# Prices (monthly + annual per paid plan)
STRIPE_PRICE_ID_BASIC_MONTHLY = os.getenv("STRIPE_PRICE_ID_BASIC_MONTHLY")
STRIPE_PRICE_ID_BASIC_ANNUAL = os.getenv("STRIPE_PRICE_ID_BASIC_ANNUAL")
STRIPE_PRICE_ID_ESSENTIALS_MONTHLY = os.getenv("STRIPE_PRICE_ID_ESSENTIALS_MONTHLY")
STRIPE_PRICE_ID_ESSENTIALS_ANNUAL = os.getenv("STRIPE_PRICE_ID_ESSENTIALS_ANNUAL")
STRIPE_PRICE_ID_PLUS_MONTHLY = os.getenv("STRIPE_PRICE_ID_PLUS_MONTHLY")
STRIPE_PRICE_ID_PLUS_ANNUAL = os.getenv("STRIPE_PRICE_ID_PLUS_ANNUAL")
STRIPE_PRICE_ID_ADVANCED_MONTHLY = os.getenv("STRIPE_PRICE_ID_ADVANCED_MONTHLY")
STRIPE_PRICE_ID_ADVANCED_ANNUAL = os.getenv("STRIPE_PRICE_ID_ADVANCED_ANNUAL")

# ✅ Gateway behaviour
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
GATEWAY_MAX_ATTEMPTS = int(os.getenv("GATEWAY_MAX_ATTEMPTS", "3"))
GATEWAY_BACKOFF_BASE_SECONDS = float(os.getenv("GATEWAY_BACKOFF_BASE_SECONDS", "0.5"))
GATEWAY_BACKOFF_MAX_SECONDS = float(os.getenv("GATEWAY_BACKOFF_MAX_SECONDS", "4"))

# ✅ Profile cache
PROFILE_CACHE_TTL_SECONDS = int(os.getenv("PROFILE_CACHE_TTL_SECONDS", str(24 * 60 * 60)))
