"""Publish stage: make the finished clip reachable and return its reference."""

import shutil
from pathlib import Path
from typing import Optional

import httpx

from ..errors import StageFailure
from ..logging import get_logger
from .base import MediaHandle, Publisher

logger = get_logger("stages.publish")


class LocalPublisher(Publisher):
    """Copies clips into an output directory served under base_url."""

    def __init__(self, output_dir: str = "outputs", base_url: str = "/outputs"):
        self.output_dir = Path(output_dir)
        self.base_url = base_url.rstrip("/")

    def publish(self, handle: MediaHandle, key: str) -> str:
        target = self.output_dir / f"{key}{handle.path.suffix}"
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(handle.path, target)
        except OSError as e:
            raise StageFailure(self.stage, f"cannot copy clip to {target}: {e}")

        reference = f"{self.base_url}/{target.name}"
        logger.info("published", result_reference=reference)
        return reference


class FileIOPublisher(Publisher):
    """Uploads clips to file.io and returns the download link."""

    def __init__(
        self,
        upload_url: str = "https://file.io",
        timeout_s: float = 120.0,
        client: Optional[httpx.Client] = None,
    ):
        self.upload_url = upload_url
        self.client = client or httpx.Client(timeout=timeout_s)

    def publish(self, handle: MediaHandle, key: str) -> str:
        filename = f"{key}{handle.path.suffix}"
        try:
            with open(handle.path, "rb") as f:
                response = self.client.post(
                    self.upload_url, files={"file": (filename, f, "video/mp4")}
                )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise StageFailure(self.stage, f"upload failed: {e}")
        except (OSError, ValueError) as e:
            raise StageFailure(self.stage, f"upload failed: {e}")

        if not isinstance(payload, dict):
            payload = {}
        link = payload.get("link")
        if not payload.get("success", True) or not link:
            raise StageFailure(self.stage, f"upload rejected: {str(payload)[:200]}")

        logger.info("published", result_reference=link)
        return link

    def close(self) -> None:
        self.client.close()
