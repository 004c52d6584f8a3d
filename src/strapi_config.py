"""Process configuration for the Strapi MCP server.

Resolved once from the environment before the stdio loop starts, then passed
explicitly to the backend client and the tool executors.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_STRAPI_URL = "http://localhost:1337"


def _default_project_root(cwd: Path) -> Path:
    """Prefer a `backend/` subdirectory when the server runs from a monorepo root."""
    backend = cwd / "backend"
    return backend if backend.is_dir() else cwd


@dataclass(frozen=True)
class StrapiConfig:
    base_url: str = DEFAULT_STRAPI_URL
    token: str = ""
    project_root: Path = Path(".")

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, cwd: Optional[Path] = None) -> "StrapiConfig":
        env = os.environ if environ is None else environ
        cwd = Path.cwd() if cwd is None else cwd

        root = env.get("PROJECT_ROOT")
        return cls(
            base_url=env.get("STRAPI_URL", DEFAULT_STRAPI_URL).rstrip("/"),
            token=env.get("STRAPI_TOKEN", ""),
            project_root=Path(root) if root else _default_project_root(cwd),
        )
