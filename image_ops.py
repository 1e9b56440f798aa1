"""
Image Primitives
Stateless OpenCV/numpy operations shared by every scanning layer:
grayscale, blur, edges, sharpness, contours, corner ordering,
perspective warp and right-angle rotation.

Also holds VisionEngine, the explicit handle on the vision runtime that
evaluators receive at construction and sessions await before searching.
"""
import cv2
import numpy as np
import logging
import threading
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from error_handlers import InvalidImageError, PerspectiveError, VisionEngineNotReadyError

logger = logging.getLogger(__name__)

ImageSource = Union[str, Path, bytes, bytearray, np.ndarray]


# ============================================================================
# Vision runtime handle
# ============================================================================

class VisionEngine:
    """
    Handle on the OpenCV runtime.

    load() configures OpenCV and runs a small warm-up pass so the first
    live frame does not pay initialisation cost. Evaluators call
    require_ready() before touching pixels.
    """

    def __init__(self, num_threads: Optional[int] = None):
        self.num_threads = num_threads
        self.version: Optional[str] = None
        self._ready = threading.Event()
        self._lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def load(self) -> bool:
        """
        Initialise the vision runtime (safe to call repeatedly).

        Returns:
            bool: True if the engine is ready
        """
        with self._lock:
            if self._ready.is_set():
                return True

            try:
                cv2.setUseOptimized(True)
                if self.num_threads is not None:
                    cv2.setNumThreads(self.num_threads)

                # Warm-up: exercise the detection path once
                sample = np.zeros((64, 64), dtype=np.uint8)
                cv2.rectangle(sample, (16, 16), (48, 48), 255, -1)
                edges = cv2.Canny(cv2.GaussianBlur(sample, (5, 5), 0), 30, 100)
                cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

                self.version = cv2.__version__
                self._ready.set()
                logger.info(f"Vision engine ready (OpenCV {self.version})")
                return True

            except Exception as e:
                logger.error(f"Failed to load vision engine: {e}")
                return False

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until load() has completed."""
        return self._ready.wait(timeout)

    def require_ready(self):
        if not self._ready.is_set():
            raise VisionEngineNotReadyError()


# ============================================================================
# Loading / encoding
# ============================================================================

def decode_image(data: Union[bytes, bytearray]) -> np.ndarray:
    """Decode encoded image bytes (JPG/PNG/...) to a BGR array."""
    if not data:
        raise InvalidImageError("Empty image data")
    buffer = np.frombuffer(bytes(data), dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        raise InvalidImageError()
    return image


def load_image(source: ImageSource) -> np.ndarray:
    """Load a BGR image from a path, encoded bytes or an existing array."""
    if isinstance(source, np.ndarray):
        if source.size == 0:
            raise InvalidImageError("Empty image array")
        return source
    if isinstance(source, (bytes, bytearray)):
        return decode_image(source)

    image = cv2.imread(str(source))
    if image is None:
        raise InvalidImageError(f"Could not read image file: {source}")
    return image


def encode_jpeg(image: np.ndarray, quality: int = 95) -> bytes:
    """Encode an image as JPEG bytes."""
    ok, buffer = cv2.imencode('.jpg', image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise InvalidImageError("Could not encode image as JPEG")
    return buffer.tobytes()


def resize_max_dim(image: np.ndarray, max_dim: int) -> Tuple[np.ndarray, float]:
    """
    Downscale so the longest side is at most max_dim.

    Returns:
        Tuple of (image, scale) where scale <= 1.0
    """
    h, w = image.shape[:2]
    longest = max(h, w)
    if longest <= max_dim:
        return image, 1.0
    scale = max_dim / float(longest)
    resized = cv2.resize(image, (max(1, int(round(w * scale))), max(1, int(round(h * scale)))),
                         interpolation=cv2.INTER_AREA)
    return resized, scale


# ============================================================================
# Pixel operations
# ============================================================================

def to_gray(image: np.ndarray) -> np.ndarray:
    """Convert BGR / BGRA / gray input to a single-channel uint8 image."""
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def gaussian_blur(gray: np.ndarray, ksize: int = 5) -> np.ndarray:
    return cv2.GaussianBlur(gray, (ksize, ksize), 0)


def canny_edges(gray: np.ndarray, low: int, high: int) -> np.ndarray:
    return cv2.Canny(gray, low, high)


def dilate(edges: np.ndarray, ksize: int = 3, iterations: int = 1) -> np.ndarray:
    """Dilate an edge map to bridge small gaps in document borders."""
    kernel = np.ones((ksize, ksize), np.uint8)
    return cv2.dilate(edges, kernel, iterations=iterations)


def laplacian_variance(gray: np.ndarray) -> float:
    """
    Sharpness as the variance of the 4-neighbour Laplacian response.
    Higher values indicate sharper images.
    """
    if gray.size == 0:
        return 0.0
    return float(cv2.Laplacian(gray, cv2.CV_64F).var())


def iter_tiles(image: np.ndarray, rows: int, cols: int) -> Iterator[Tuple[int, int, np.ndarray]]:
    """Yield (row, col, tile) over an evenly split rows x cols grid."""
    h, w = image.shape[:2]
    ys = np.linspace(0, h, rows + 1).astype(int)
    xs = np.linspace(0, w, cols + 1).astype(int)
    for r in range(rows):
        for c in range(cols):
            yield r, c, image[ys[r]:ys[r + 1], xs[c]:xs[c + 1]]


def rotate_right_angle(image: np.ndarray, angle: int) -> np.ndarray:
    """Rotate clockwise by a multiple of 90 degrees."""
    angle = int(angle) % 360
    if angle == 0:
        return image
    if angle == 90:
        return cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE)
    if angle == 180:
        return cv2.rotate(image, cv2.ROTATE_180)
    if angle == 270:
        return cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE)
    raise ValueError(f"Rotation must be a multiple of 90 degrees, got {angle}")


# ============================================================================
# Contours and quadrilaterals
# ============================================================================

def find_external_contours(binary: np.ndarray) -> List[np.ndarray]:
    contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    return list(contours)


def approximate_polygon(contour: np.ndarray, epsilon_ratio: float = 0.02) -> np.ndarray:
    peri = cv2.arcLength(contour, True)
    return cv2.approxPolyDP(contour, epsilon_ratio * peri, True)


def order_corners(points) -> np.ndarray:
    """
    Order 4 points as top-left, top-right, bottom-right, bottom-left.

    Top-left has the smallest x+y, bottom-right the largest;
    top-right has the smallest y-x, bottom-left the largest.
    """
    pts = np.asarray(points, dtype=np.float32).reshape(4, 2)
    rect = np.zeros((4, 2), dtype=np.float32)

    s = pts.sum(axis=1)
    diff = np.diff(pts, axis=1).ravel()

    rect[0] = pts[np.argmin(s)]
    rect[2] = pts[np.argmax(s)]
    rect[1] = pts[np.argmin(diff)]
    rect[3] = pts[np.argmax(diff)]

    return rect


def edge_lengths(quad: np.ndarray) -> Tuple[float, float, float, float]:
    """Lengths of the (top, right, bottom, left) edges of an ordered quad."""
    tl, tr, br, bl = np.asarray(quad, dtype=np.float64).reshape(4, 2)
    top = float(np.linalg.norm(tr - tl))
    right = float(np.linalg.norm(br - tr))
    bottom = float(np.linalg.norm(br - bl))
    left = float(np.linalg.norm(bl - tl))
    return top, right, bottom, left


def quad_area(quad) -> float:
    pts = np.asarray(quad, dtype=np.float32).reshape(-1, 1, 2)
    return float(cv2.contourArea(pts))


def quad_centroid(quad) -> np.ndarray:
    return np.asarray(quad, dtype=np.float32).reshape(4, 2).mean(axis=0)


def clamp_points(points, width: int, height: int) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2).copy()
    pts[:, 0] = np.clip(pts[:, 0], 0, width - 1)
    pts[:, 1] = np.clip(pts[:, 1], 0, height - 1)
    return pts


def quad_bounds(quad, width: int, height: int) -> Tuple[int, int, int, int]:
    """Bounding box (x0, y0, x1, y1) of a quad, clipped to the frame."""
    pts = np.asarray(quad, dtype=np.float32).reshape(-1, 2)
    x0 = int(max(0, np.floor(pts[:, 0].min())))
    y0 = int(max(0, np.floor(pts[:, 1].min())))
    x1 = int(min(width, np.ceil(pts[:, 0].max()) + 1))
    y1 = int(min(height, np.ceil(pts[:, 1].max()) + 1))
    return x0, y0, x1, y1


def perspective_warp(image: np.ndarray, quad) -> np.ndarray:
    """
    Warp the region bounded by quad to a flat rectangle.

    Output width is the longer of the top/bottom edges, height the longer
    of the left/right edges; resampling is bilinear.

    Raises:
        PerspectiveError: If the quadrilateral is degenerate
    """
    rect = order_corners(quad)
    top, right, bottom, left = edge_lengths(rect)

    width = int(round(max(top, bottom)))
    height = int(round(max(left, right)))

    if width < 2 or height < 2:
        raise PerspectiveError(f"degenerate output size {width}x{height}")
    if quad_area(rect) < 1.0:
        raise PerspectiveError("quadrilateral has no area")

    dst = np.array([
        [0, 0],
        [width - 1, 0],
        [width - 1, height - 1],
        [0, height - 1]
    ], dtype=np.float32)

    M = cv2.getPerspectiveTransform(rect, dst)
    if not np.all(np.isfinite(M)) or abs(np.linalg.det(M)) < 1e-9:
        raise PerspectiveError("singular transform")

    warped = cv2.warpPerspective(image, M, (width, height),
                                 flags=cv2.INTER_LINEAR,
                                 borderMode=cv2.BORDER_REPLICATE)
    logger.debug(f"Perspective warp: {image.shape[1]}x{image.shape[0]} -> {width}x{height}")
    return warped
