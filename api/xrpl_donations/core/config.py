import os
from dotenv import load_dotenv

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY") or os.getenv("SUPABASE_PUBLISHABLE_KEY", "")

XRPL_RPC_URL = os.getenv("XRPL_RPC_URL", "https://s.altnet.rippletest.net:51234")
XRPL_NETWORK = os.getenv("XRPL_NETWORK", "testnet")
XRPL_TIMEOUT_S = float(os.getenv("XRPL_TIMEOUT_S", "10"))
XRPL_TREASURY_ADDRESS = os.getenv("XRPL_TREASURY_ADDRESS", "")
XRPL_ISSUER_SEED = os.getenv("XRPL_ISSUER_SEED")  # Reward checks are skipped when unset

# Quote currency for pricing (RLUSD on the XRPL DEX)
RLUSD_CURRENCY = os.getenv("RLUSD_CURRENCY", "RLUSD")
RLUSD_ISSUER = os.getenv("RLUSD_ISSUER", "rQhWct2fv4Vc4KRjRgMrxa8xPN9Zx9iLKV")

XAMAN_API_KEY = os.getenv("XAMAN_API_KEY")
XAMAN_API_SECRET = os.getenv("XAMAN_API_SECRET")
XAMAN_BASE_URL = os.getenv("XAMAN_BASE_URL", "https://xumm.app/api/v1")
XAMAN_TIMEOUT_S = float(os.getenv("XAMAN_TIMEOUT_S", "15"))

JWT_SECRET = os.getenv("JWT_SECRET", "jwt-dev")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

DONATION_MAX_XRP = float(os.getenv("DONATION_MAX_XRP", "10000"))
DONATION_EXPIRE_MINUTES = int(os.getenv("DONATION_EXPIRE_MINUTES", "10"))
WALLET_LINK_EXPIRE_MINUTES = int(os.getenv("WALLET_LINK_EXPIRE_MINUTES", "5"))
TRUSTLINE_EXPIRE_MINUTES = int(os.getenv("TRUSTLINE_EXPIRE_MINUTES", "5"))
VERIFY_DONATION_TX = os.getenv("VERIFY_DONATION_TX", "true").lower() == "true"

RATE_CACHE_TTL_S = int(os.getenv("RATE_CACHE_TTL_S", "300"))
RATE_MAX_AGE_S = int(os.getenv("RATE_MAX_AGE_S", "3600"))

PRICING_BASE_PRICE = float(os.getenv("PRICING_BASE_PRICE", "1.0"))
PRICING_QUALITY_COEFFICIENT = float(os.getenv("PRICING_QUALITY_COEFFICIENT", "3.0"))
PRICING_DONATION_COEFFICIENT = float(os.getenv("PRICING_DONATION_COEFFICIENT", "1.0"))
PRICING_REFERENCE_DONATION = float(os.getenv("PRICING_REFERENCE_DONATION", "5000"))

REWARD_CHECK_EXPIRE_DAYS = int(os.getenv("REWARD_CHECK_EXPIRE_DAYS", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

TBL_PROJECTS = os.getenv("PROJECTS_TABLE", "projects")
TBL_WALLET_LINKS = os.getenv("WALLET_LINK_REQUESTS_TABLE", "wallet_link_requests")
TBL_WALLETS = os.getenv("WALLETS_TABLE", "wallets")
TBL_DONATION_REQUESTS = os.getenv("DONATION_REQUESTS_TABLE", "donation_requests")
TBL_DONATION_RECORDS = os.getenv("DONATION_RECORDS_TABLE", "donation_records")
TBL_TRUSTLINE_REQUESTS = os.getenv("TRUSTLINE_REQUESTS_TABLE", "trustline_requests")
