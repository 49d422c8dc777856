# prakriti/config.py
import os
from typing import List, Optional

from pydantic import BaseModel, Field


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime configuration, read from the environment once at startup."""

    # Text generation (quest drafts)
    gemini_api_key: Optional[str] = None
    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-1.5-flash"
    use_gemini_stub: bool = False

    # Panel art
    panel_backend: str = "nanobanana"  # "nanobanana" | "gemini"
    nanobanana_api_key: Optional[str] = None
    nanobanana_endpoints: List[str] = Field(
        default_factory=lambda: ["https://api.nanobanana.com/v1/comics:render"]
    )
    use_nanobanana_stub: bool = False
    gemini_image_model: str = "gemini-2.0-flash-preview-image-generation"
    use_image_stub: bool = False
    allow_insecure_tls_retry: bool = False

    http_timeout: float = 60.0

    # Storage
    data_dir: str = "data"
    static_dir: str = "public"
    max_upload_mb: int = 10
    kv_backend: str = "memory"  # "memory" | "redis"
    redis_url: str = "redis://redis:6379"

    reward_policy: str = "perfect_only"  # "perfect_only" | "proportional"

    @property
    def seed_quests_path(self) -> str:
        return os.path.join(self.data_dir, "quests.json")

    @property
    def generated_quests_path(self) -> str:
        return os.path.join(self.data_dir, "generated-quests.json")

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            gemini_api_key=os.environ.get("GEMINI_API_KEY") or None,
            gemini_api_url=os.environ.get(
                "GEMINI_API_URL", "https://generativelanguage.googleapis.com/v1beta"
            ),
            gemini_model=os.environ.get("GEMINI_MODEL", "gemini-1.5-flash"),
            use_gemini_stub=_env_flag("PRAKRITI_USE_GEMINI_STUB"),
            panel_backend=os.environ.get("PRAKRITI_PANEL_BACKEND", "nanobanana"),
            nanobanana_api_key=os.environ.get("NANOBANANA_API_KEY") or None,
            nanobanana_endpoints=_env_list(
                "NANOBANANA_API_URL", "https://api.nanobanana.com/v1/comics:render"
            ),
            use_nanobanana_stub=_env_flag("PRAKRITI_USE_NANOBANANA_STUB"),
            gemini_image_model=os.environ.get(
                "GEMINI_IMAGE_MODEL", "gemini-2.0-flash-preview-image-generation"
            ),
            use_image_stub=_env_flag("PRAKRITI_USE_IMAGE_STUB"),
            allow_insecure_tls_retry=_env_flag("PRAKRITI_ALLOW_INSECURE_TLS_RETRY"),
            http_timeout=float(os.environ.get("PRAKRITI_HTTP_TIMEOUT", 60)),
            data_dir=os.environ.get("PRAKRITI_DATA_DIR", "data"),
            static_dir=os.environ.get("PRAKRITI_STATIC_DIR", "public"),
            max_upload_mb=int(os.environ.get("PRAKRITI_MAX_UPLOAD_MB", 10)),
            kv_backend=os.environ.get("PRAKRITI_KV_BACKEND", "memory"),
            redis_url=os.environ.get("REDIS_URL", "redis://redis:6379"),
            reward_policy=os.environ.get("PRAKRITI_REWARD_POLICY", "perfect_only"),
        )
