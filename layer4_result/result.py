"""
Layer 4 — Scan Result
Component: Result packaging and upload hand-off
Responsibility: Encode the confirmed image once and pass it, with its
metadata, to whatever component owns uploading
"""
import io
import os
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

import numpy as np

from image_ops import encode_jpeg

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "scanned_doc.jpg"
DEFAULT_QUALITY = 95

# Upload collaborator: accepts (file, metadata); retries, duplicate
# detection and progress are its concern, its return value is ignored.
UploadHandoff = Callable[[io.BytesIO, Dict], object]


@dataclass
class ScanResult:
    """The single encoded image produced by a confirmed scan."""
    image_bytes: bytes
    width: int
    height: int
    rotation: int = 0
    filename: str = DEFAULT_FILENAME
    enhanced: bool = False
    metadata: Dict = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def from_image(cls, image: np.ndarray, rotation: int = 0,
                   quality: int = DEFAULT_QUALITY, filename: str = DEFAULT_FILENAME,
                   enhanced: bool = False, metadata: Optional[Dict] = None) -> "ScanResult":
        """
        Encode an already-rotated image as JPEG.

        Args:
            image: Final BGR image (rotation already applied)
            rotation: Total clockwise rotation applied, for the record
            quality: JPEG quality (0-100)
        """
        h, w = image.shape[:2]
        data = encode_jpeg(image, quality)
        logger.info(f"ScanResult packaged: {filename} {w}x{h} ({len(data)} bytes)")
        return cls(
            image_bytes=data,
            width=w,
            height=h,
            rotation=int(rotation) % 360,
            filename=filename,
            enhanced=enhanced,
            metadata=dict(metadata or {}),
        )

    def to_file(self) -> io.BytesIO:
        """File-like view of the JPEG with a fixed logical name."""
        buffer = io.BytesIO(self.image_bytes)
        buffer.name = self.filename
        return buffer

    def save(self, directory: str = ".") -> str:
        """
        Write the JPEG to directory/filename

        Returns:
            str: Path of the written file
        """
        if directory and not os.path.exists(directory):
            os.makedirs(directory)
            logger.info(f"Created directory: {directory}")

        filepath = os.path.join(directory, self.filename)
        with open(filepath, 'wb') as f:
            f.write(self.image_bytes)

        logger.info(f"Scan saved to: {filepath}")
        return filepath

    def to_dict(self) -> Dict:
        """Convert to dictionary for API responses (image bytes omitted)."""
        return {
            'filename': self.filename,
            'width': self.width,
            'height': self.height,
            'rotation': self.rotation,
            'enhanced': self.enhanced,
            'size_bytes': len(self.image_bytes),
            'created_at': self.created_at,
            'metadata': self.metadata,
        }


def hand_off(result: ScanResult, uploader: Optional[UploadHandoff]) -> bool:
    """
    Pass the result to the upload collaborator.

    The scanner has no knowledge of upload success; a collaborator that
    raises is logged and the scan is still considered complete.

    Returns:
        bool: True if the collaborator was invoked without raising
    """
    if uploader is None:
        logger.debug("No upload collaborator registered")
        return False

    metadata = {**result.metadata, **result.to_dict()}
    metadata.pop('metadata', None)

    try:
        uploader(result.to_file(), metadata)
        logger.info(f"Handed off {result.filename} to upload collaborator")
        return True
    except Exception as e:
        logger.error(f"Upload collaborator raised: {e}")
        logger.exception("Full traceback:")
        return False
