import logging
import os
from functools import lru_cache

logger = logging.getLogger("shiftcare.env")


@lru_cache(maxsize=1)
def ensure_loaded() -> None:
    """Load the central env file once, if one is present.

    Priority:
    1) SHIFTCARE_ENV_FILE path
    2) /etc/shiftcare/shiftcare.env
    3) .env (relative to CWD)
    Variables already present in the environment are never overridden.
    """
    candidates = [
        os.getenv("SHIFTCARE_ENV_FILE", ""),
        "/etc/shiftcare/shiftcare.env",
        ".env",
    ]
    for p in candidates:
        if p and os.path.isfile(p):
            _load_env_file(p)
            return


def _load_env_file(path: str) -> None:
    loaded = 0
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                if line.startswith("export "):
                    line = line[len("export "):]
                k, v = line.split("=", 1)
                k = k.strip()
                v = v.strip().strip('"').strip("'")
                if k and k not in os.environ:
                    os.environ[k] = v
                    loaded += 1
    except OSError as exc:
        logger.warning("Could not read env file %s (%s)", path, exc)
        return
    logger.debug("Loaded %d settings from %s", loaded, path)
