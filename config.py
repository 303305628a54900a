import os
from decimal import Decimal

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "marketplace")

# Service
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Checkout
TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.19"))
STANDARD_SHIPPING_FEE = Decimal(os.getenv("STANDARD_SHIPPING_FEE", "5.99"))
EXPRESS_SHIPPING_FEE = Decimal(os.getenv("EXPRESS_SHIPPING_FEE", "9.99"))
FREE_SHIPPING_THRESHOLD = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "50"))
HANDLING_DAYS = int(os.getenv("HANDLING_DAYS", 1))
