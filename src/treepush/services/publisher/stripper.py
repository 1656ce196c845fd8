"""Removal of sensitive subtrees before publication."""

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

# Workflow definitions need an elevated token scope and are rejected without it
SENSITIVE_DIR_NAME = ".github"


def strip_sensitive_content(working_dir: Path) -> bool:
    """Remove the ``.github`` subtree from ``working_dir`` if present.

    Args:
        working_dir: Root of the extracted archive content

    Returns:
        True if anything was removed
    """
    target = Path(working_dir) / SENSITIVE_DIR_NAME
    if not target.exists() and not target.is_symlink():
        return False

    logger.info(
        "Found .github directory, removing to avoid workflow scope issues",
        extra={"path": str(target)},
    )
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()
    return True
