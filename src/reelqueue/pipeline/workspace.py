"""Per-job temporary workspace."""

import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from ..logging import get_logger

logger = get_logger("pipeline.workspace")


@contextmanager
def job_workspace(job_id: int, root: Optional[str] = None) -> Iterator[Path]:
    """Yield a fresh directory for one job and remove it on every exit path.

    Cleanup runs for exceptions too (including KeyboardInterrupt), so a
    crashed attempt never leaves downloads behind for the redelivery.
    """
    if root:
        Path(root).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"job_{job_id}_", dir=root))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("workspace_removed", path=str(path))
