import logging
import re
import threading
from collections import Counter, deque
from typing import Callable, Iterable, Optional

import config
from errors import GateError

logger = logging.getLogger(__name__)

PREFIX_RE = re.compile(r"^[A-Z]{3}\d{3}-\d{8,}$")  # SGI045-00149601
ALNUM_DASH_RE = re.compile(r"^[A-Z0-9\-]+$")
PLAUSIBLE_RE = re.compile(r"^[A-Z0-9][A-Z0-9\-_/. ]{2,49}$")
DASHES = {ord(c): "-" for c in "\u2010\u2011\u2012\u2013\u2014\u2212"}


class CameraUnavailable(GateError):
    category = "camera"; status_code = 409; default_title = "Kamera Tidak Tersedia"

    def __init__(self, message: str = "Kamera tidak tersedia. Silakan gunakan input manual."):
        super().__init__(message)


def format_barcode(code: str) -> str:
    return " ".join(str(code or "").split()).upper().translate(DASHES)


def is_valid_barcode(code: str) -> bool:
    clean = format_barcode(code)
    if len(clean) < 3: return False
    if PREFIX_RE.match(clean): return True
    return 8 <= len(clean) <= 30 and bool(ALNUM_DASH_RE.match(clean))


class ConsistencyFilter:
    def __init__(self, window: int = config.SCAN_HISTORY, min_detections: int = 3, min_count: int = 2):
        self.recent = deque(maxlen=window)
        self.min_detections = min_detections; self.min_count = min_count
        self.attempts = 0

    def track(self, code: str):
        if not code: return
        self.recent.append(format_barcode(code)); self.attempts += 1

    def consistent(self) -> Optional[str]:
        if len(self.recent) < self.min_detections: return None
        code, count = Counter(self.recent).most_common(1)[0]
        return code if count >= self.min_count else None

    def reset(self):
        self.recent.clear(); self.attempts = 0


def pyzbar_decoder(frame) -> Iterable[str]:
    from pyzbar import pyzbar  # needs the zbar shared library, only loaded for camera mode
    return [r.data.decode("utf-8", "replace") for r in pyzbar.decode(frame)]


class BarcodeScanner:
    def __init__(self, on_detected: Callable[[str], None], decoder: Callable = None, camera_index: int = 0,
                 auto_advance_delay: float = config.AUTO_ADVANCE_SEC, camera_factory: Callable = None):
        self.on_detected = on_detected
        self.decoder = decoder or pyzbar_decoder
        self.camera_index = camera_index; self.auto_advance_delay = auto_advance_delay
        self.camera_factory = camera_factory
        self.filter = ConsistencyFilter()
        self.last_code: Optional[str] = None
        self._stop: Optional[threading.Event] = None
        self._pending: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    @property
    def scanning(self) -> bool: return self._stop is not None and not self._stop.is_set()

    def start(self):
        with self._lock:
            if self.scanning: return
            capture = self._open_camera()
            self.filter.reset(); self.last_code = None
            stop = self._stop = threading.Event()
        threading.Thread(target=self._loop, args=(capture, stop), name="barcode-scan", daemon=True).start()
        logger.info("camera %s scanning", self.camera_index)

    def _open_camera(self):
        if self.camera_factory is not None:
            capture = self.camera_factory(self.camera_index)
        else:
            try:
                import cv2
            except ImportError as e:
                raise CameraUnavailable() from e
            capture = cv2.VideoCapture(self.camera_index)
        if capture is None or not capture.isOpened():
            if capture is not None: capture.release()
            raise CameraUnavailable("Tidak dapat memulai kamera. Periksa izin dan pencahayaan.")
        return capture

    def _loop(self, capture, stop: threading.Event):
        try:
            while not stop.is_set():
                ok, frame = capture.read()
                if not ok:
                    logger.warning("camera returned no frame, stopping scan"); stop.set(); break
                for text in self.decoder(frame):
                    if stop.is_set() or self.handle_detection(text): break
        except Exception:
            logger.exception("scan loop failed"); stop.set()
        finally:
            capture.release()

    def handle_detection(self, text: str) -> Optional[str]:
        """Feed one raw decode; returns the accepted code or None to keep scanning."""
        text = (text or "").strip()
        if not text: return None
        self.filter.track(text)
        if is_valid_barcode(text): return self._accept(text)
        candidate = self.filter.consistent()
        if candidate and PLAUSIBLE_RE.match(candidate):
            logger.info("accepting %s after %d consistent reads", candidate, self.filter.attempts)
            return self._accept(candidate)
        logger.debug("ignoring unrecognised read %r", text)
        return None

    def _accept(self, code: str) -> str:
        code = format_barcode(code)
        self._halt()
        self.last_code = code
        self._pending = threading.Timer(self.auto_advance_delay, self.on_detected, args=(code,))
        self._pending.daemon = True; self._pending.start()
        return code

    def _halt(self):
        if self._stop is not None: self._stop.set()
        self._stop = None
        self.filter.reset()

    def stop(self):
        """Release the camera and drop a pending auto-advance. Safe to call repeatedly."""
        self._halt()
        if self._pending is not None: self._pending.cancel()
        self._pending = None
