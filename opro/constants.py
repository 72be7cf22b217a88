# ─────────────────────────── Retry defaults ──────────────────────────────
PROPOSER_MAX_ATTEMPTS: int = 2
SCORER_MAX_ATTEMPTS: int = 2
DEFAULT_RETRY_DELAY: float = 1.0
SCORER_RETRY_DELAY: float = 5.0
REQUEST_STAGGER: float = 0.01

# ─────────────────────────── Limits ──────────────────────────────────────
MIN_K: int = 1
MAX_K: int = 16
MIN_TEMPERATURE: float = 0.0
MAX_TEMPERATURE: float = 2.0
META_PROMPT_EXAMPLES: int = 3

# ─────────────────────────── Models ──────────────────────────────────────
DEFAULT_MODEL: str = "gemini-2.5-flash"
PROPOSER_MAX_TOKENS: int = 40_960
SCORER_MAX_TOKENS: int = 2_048
OPENAI_MAX_OUTPUT_TOKENS: int = 16_384

# ─────────────────────────── Storage / env ───────────────────────────────
STORE_DIR_ENV: str = "OPRO_STORE_DIR"
DEFAULT_STORE_DIR: str = ".opro_sessions"
BENCHMARK_ENV: str = "OPRO_BENCHMARK"
DEFAULT_BENCHMARK: str = "gsm_train.tsv"
SEED_ENV: str = "OPRO_SEED"
