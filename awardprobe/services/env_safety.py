"""Drop TLS-related environment variables that would break client creation.

httpx and the openai SDK read these while building an SSL context. A stale
path in any of them makes every Firecrawl or model call fail before a
request is sent.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, MutableMapping

from loguru import logger


def _keylog_usable(path: Path) -> bool:
    if not path.parent.exists():
        return False
    try:
        # Append mode keeps an existing key log intact.
        with open(path, "a", encoding="utf-8"):
            pass
    except OSError:
        return False
    return True


def _cert_file_usable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


def _cert_dir_usable(path: Path) -> bool:
    return path.is_dir()


TLS_VARIABLES: dict[str, Callable[[Path], bool]] = {
    "SSLKEYLOGFILE": _keylog_usable,
    "SSL_CERT_FILE": _cert_file_usable,
    "SSL_CERT_DIR": _cert_dir_usable,
}


def sanitize_tls_environment(environ: MutableMapping[str, str] | None = None) -> list[str]:
    """Remove TLS variables whose paths are unusable; returns the removed names."""
    env = os.environ if environ is None else environ
    removed: list[str] = []
    for name, usable in TLS_VARIABLES.items():
        raw = env.get(name, "").strip()
        if not raw or usable(Path(raw)):
            continue
        env.pop(name, None)
        removed.append(name)
        logger.warning(f"Ignoring {name}={raw!r}: path is not usable")
    return removed
