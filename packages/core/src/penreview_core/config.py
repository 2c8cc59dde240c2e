import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

import yaml

from penreview_core.errors import ConfigError

DEFAULT_CONFIG: dict = {
    "review_mode": "full",  # "full" renders every head frame; "diff" only added/modified frames
    "comment_mode": "update",
    "comment_marker": None,  # namespace so several workflows can each keep one report on a PR
    "documents": "**/*.pen",
    "service_url": None,
    "image_format": "webp",
    "image_scale": 2,
    "image_quality": 90,
    "max_frames_per_document": 20,  # 0 = unlimited
    "include_removed": False,
    "frame_depth": 1,  # 1 = top-level frames only; null = frames at any depth
    "output_dir": None,  # set to download rendered images locally
    "poll_initial_interval": 2.0,
    "poll_multiplier": 1.5,
    "poll_max_interval": 15.0,
    "poll_timeout": 600.0,
    "token_refresh_seconds": 240,
}

REVIEW_MODES = ("full", "diff")
COMMENT_MODES = ("create", "update", "none")
IMAGE_FORMATS = ("png", "jpeg", "webp")
IMAGE_SCALES = (1, 2, 3)

GITHUB_TOKEN_VARS = ("GITHUB_TOKEN", "GH_TOKEN")

logger = logging.getLogger(__name__)


def load_config(config_path: str = ".penreview.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .penreview.yml in the current directory
      3. CLI argument overrides
    """
    config = dict(DEFAULT_CONFIG)

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ConfigError(f"{config_path} must contain a mapping of options")
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Resolve credentials from the environment
    config["github_token"] = resolve_github_token()
    config["service_api_key"] = os.environ.get("PENREVIEW_SERVICE_API_KEY")
    if not config.get("service_url"):
        config["service_url"] = os.environ.get("PENREVIEW_SERVICE_URL")

    return config


def resolve_github_token() -> Optional[str]:
    """GITHUB_TOKEN or GH_TOKEN, else the token of a local `gh auth login` session.

    Returns None when neither is available; the caller decides whether that is fatal.
    """
    for var in GITHUB_TOKEN_VARS:
        if os.environ.get(var):
            return os.environ[var]
    try:
        proc = subprocess.run(["gh", "auth", "token"], capture_output=True, text=True, timeout=5)
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.debug("gh CLI token lookup unavailable: %s", e)
        return None
    token = proc.stdout.strip() if proc.returncode == 0 else ""
    if token:
        logger.debug("Using the GitHub token of the gh CLI session")
    return token or None


def validate_config(config: dict) -> None:
    """Raise ConfigError for the first invalid option."""
    if config.get("review_mode") not in REVIEW_MODES:
        raise ConfigError(f"Invalid review_mode: {config.get('review_mode')!r}. Must be 'full' or 'diff'.")
    if config.get("comment_mode") not in COMMENT_MODES:
        raise ConfigError(
            f"Invalid comment_mode: {config.get('comment_mode')!r}. Must be 'create', 'update' or 'none'."
        )
    if config.get("image_format") not in IMAGE_FORMATS:
        raise ConfigError(f"Invalid image_format: {config.get('image_format')!r}. Must be 'png', 'jpeg' or 'webp'.")

    scale = _as_int(config, "image_scale")
    if scale not in IMAGE_SCALES:
        raise ConfigError(f"Invalid image_scale: {scale}. Must be 1, 2 or 3.")
    quality = _as_int(config, "image_quality")
    if not 1 <= quality <= 100:
        raise ConfigError(f"Invalid image_quality: {quality}. Must be between 1 and 100.")
    if _as_int(config, "max_frames_per_document") < 0:
        raise ConfigError("max_frames_per_document must be a non-negative integer.")

    depth = config.get("frame_depth")
    if depth is not None and _as_int(config, "frame_depth") < 1:
        raise ConfigError("frame_depth must be a positive integer or null.")

    if not config.get("service_url"):
        raise ConfigError("service_url is required. Set it in .penreview.yml or PENREVIEW_SERVICE_URL.")


def _as_int(config: dict, key: str) -> int:
    value = config.get(key)
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
