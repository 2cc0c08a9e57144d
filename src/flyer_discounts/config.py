import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

from .logging import get_logger
from .paths import find_project_root

log = get_logger("config")


DEFAULT_VISION_ENDPOINT = "https://us-central1-aiplatform.googleapis.com"
DEFAULT_VISION_MODEL = "imagen-3.0-generate-001"
DEFAULT_LLM_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_LLM_MODEL = "google/gemini-2.5-flash"


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories (e.g., `src/`) still find
    the repository-level `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(start_dir: str) -> Dict[str, str]:
    """Read the nearest .env into a mapping; never mutates os.environ."""
    path = _find_upwards(start_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(start_dir)}")
        return {}
    values = {k: v for k, v in dotenv_values(path).items() if v is not None}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: Optional[str], default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        log.warning(f"Ignoring non-numeric config value {value!r}; using {default}")
        return default


def _as_int(value: Optional[str], default: int) -> int:
    return int(_as_float(value, float(default)))


@dataclass(frozen=True)
class Settings:
    root_dir: str
    vision_endpoint: str = DEFAULT_VISION_ENDPOINT
    vision_project_id: Optional[str] = None
    vision_location: str = "us-central1"
    vision_model: str = DEFAULT_VISION_MODEL
    credentials_path: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_model: str = DEFAULT_LLM_MODEL
    vision_max_attempts: int = 4
    vision_base_delay: float = 1.0
    detection_timeout: float = 120.0
    inter_call_delay: float = 3.0
    direct_generation: bool = True
    match_candidate_limit: int = 10
    auto_approval_min_confidence: float = 0.8
    public_base_url: Optional[str] = None

    @property
    def vision_predict_url(self) -> str:
        base = self.vision_endpoint.rstrip("/")
        return (
            f"{base}/v1/projects/{self.vision_project_id}/locations/{self.vision_location}"
            f"/publishers/google/models/{self.vision_model}:predict"
        )


def load_settings(start_dir: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment, falling back to the nearest .env."""
    env = os.environ if environ is None else environ
    dotenv = _read_dotenv(start_dir or os.getcwd())

    def get(key: str) -> Optional[str]:
        value = env.get(key)
        if value is None or not str(value).strip():
            value = dotenv.get(key)
        return value.strip() if isinstance(value, str) and value.strip() else None

    root_dir = get("FLYER_ROOT_DIR") or find_project_root(start_dir)
    api_key = get("LLM_API_KEY") or get("OPENROUTER_API_KEY") or get("OPENAI_API_KEY")
    if not api_key:
        log.debug("No LLM API key in env or .env; language model calls will fail")

    settings = Settings(
        root_dir=root_dir,
        vision_endpoint=get("VISION_ENDPOINT") or DEFAULT_VISION_ENDPOINT,
        vision_project_id=get("VISION_PROJECT_ID"),
        vision_location=get("VISION_LOCATION") or "us-central1",
        vision_model=get("VISION_MODEL") or DEFAULT_VISION_MODEL,
        credentials_path=get("GOOGLE_APPLICATION_CREDENTIALS"),
        llm_api_key=api_key,
        llm_base_url=get("LLM_BASE_URL") or DEFAULT_LLM_BASE_URL,
        llm_model=get("LLM_MODEL") or DEFAULT_LLM_MODEL,
        vision_max_attempts=_as_int(get("VISION_MAX_ATTEMPTS"), 4),
        vision_base_delay=_as_float(get("VISION_BASE_DELAY"), 1.0),
        detection_timeout=_as_float(get("DETECTION_TIMEOUT"), 120.0),
        inter_call_delay=_as_float(get("INTER_CALL_DELAY"), 3.0),
        direct_generation=_as_bool(get("DIRECT_GENERATION"), True),
        match_candidate_limit=_as_int(get("MATCH_CANDIDATE_LIMIT"), 10),
        auto_approval_min_confidence=_as_float(get("AUTO_APPROVAL_MIN_CONFIDENCE"), 0.8),
        public_base_url=get("PUBLIC_BASE_URL"),
    )
    log.debug(f"Settings loaded for root {settings.root_dir}")
    return settings
