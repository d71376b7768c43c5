import os

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL")

# --- LLM Providers ---
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
MISTRAL_API_KEY = os.getenv("MISTRAL_API_KEY")
DEEPSEEK_API_KEY = os.getenv("DEEPSEEK_API_KEY")

AGENT_PROVIDER = os.getenv("AGENT_PROVIDER", "groq").lower()
AGENT_MODEL = os.getenv("AGENT_MODEL", "llama-3.3-70b-versatile")
FAST_MODEL = os.getenv("FAST_MODEL", "llama-3.1-8b-instant")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "120"))

# --- Sandbox ---
E2B_API_KEY = os.getenv("E2B_API_KEY")
SANDBOX_TEMPLATE = os.getenv("SANDBOX_TEMPLATE") or None
SANDBOX_PORT = int(os.getenv("SANDBOX_PORT", "3000"))
COMMAND_TIMEOUT_SECONDS = float(os.getenv("COMMAND_TIMEOUT_SECONDS", "300"))
# How long a successful turn's sandbox stays up to serve its preview.
PREVIEW_TTL_SECONDS = int(os.getenv("PREVIEW_TTL_SECONDS", str(30 * 60)))

# --- Turn ---
TURN_TIMEOUT_SECONDS = float(os.getenv("TURN_TIMEOUT_SECONDS", str(30 * 60)))
AGENT_MAX_ITERATIONS = int(os.getenv("AGENT_MAX_ITERATIONS", "15"))
MAX_CONTEXT_FILE_CHARS = int(os.getenv("MAX_CONTEXT_FILE_CHARS", "60000"))
MAX_HISTORY_MESSAGES = int(os.getenv("MAX_HISTORY_MESSAGES", "24"))
MAX_PROMPT_LEN = int(os.getenv("MAX_PROMPT_LEN", "10000"))

# --- Credits ---
FREE_CREDITS = int(os.getenv("FREE_CREDITS", "1"))
PRO_CREDITS = int(os.getenv("PRO_CREDITS", "100"))
CREDIT_PERIOD_SECONDS = int(os.getenv("CREDIT_PERIOD_SECONDS", str(30 * 24 * 60 * 60)))
GENERATION_COST = int(os.getenv("GENERATION_COST", "1"))

# --- Uploads ---
UPLOADS_ROOT = os.getenv("UPLOADS_ROOT", os.path.join(os.path.dirname(__file__), "..", "data", "uploads"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))

# --- HTTP ---
JWT_SECRET = os.getenv("JWT_SECRET", "vibecode-jwt-secret-2025")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
RATE_LIMIT_PER_MIN = int(os.getenv("RATE_LIMIT_PER_MIN", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
