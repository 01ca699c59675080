import os
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "convenio-secret-must-change-in-prod")
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "true" if ENVIRONMENT == "production" else "false").lower() == "true"

# URLs used to build gateway return/notification URLs
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/")
API_URL = os.getenv("API_URL", "http://localhost:8000").rstrip("/")

# Mercado Pago
MP_ACCESS_TOKEN = os.getenv("MP_ACCESS_TOKEN")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "5"))

# Supabase storage (documents and photos)
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")
SUPABASE_BUCKET = os.getenv("SUPABASE_BUCKET", "convenio-files")

# Default admin seeded by the bootstrapper
ADMIN_CPF = os.getenv("ADMIN_CPF", "00000000000")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123456")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Administrador")

# Seconds between runs of the subscription expiry job, 0 disables it
EXPIRATION_CHECK_INTERVAL = int(os.getenv("EXPIRATION_CHECK_INTERVAL", "3600"))

# Prices (BRL)
SUBSCRIPTION_BASE_PRICE = Decimal("250.00")
DEPENDENT_PRICE = Decimal("50.00")
AGENDA_ACCESS_PRICE = Decimal("24.99")
AGENDA_ACCESS_DAYS = 30
SUBSCRIPTION_YEARS = 1
MAX_DEPENDENTS = 10
# Paid to an affiliate per converted client unless set on the affiliate
DEFAULT_AFFILIATE_COMMISSION = Decimal("10.00")
