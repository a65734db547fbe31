import threading

import pytest

from scanner import BarcodeScanner, CameraUnavailable, ConsistencyFilter, format_barcode, is_valid_barcode


class FakeCamera:
    def __init__(self, frames, opened=True):
        self.frames = list(frames); self.opened = opened; self.released = threading.Event()

    def isOpened(self): return self.opened

    def read(self):
        if not self.frames: return False, None
        return True, self.frames.pop(0)

    def release(self): self.released.set()


def collecting():
    got = []; done = threading.Event()
    def on_detected(code):
        got.append(code); done.set()
    return got, done, on_detected


class TestBarcodeRules:
    @pytest.mark.parametrize("code", ["SGI045-00149601", "sgi045-00149601", "ABC123-12345678", "TRK-2026-0001",
                                      "12345678"])
    def test_valid(self, code):
        assert is_valid_barcode(code)

    @pytest.mark.parametrize("code", ["", "AB", "SHORT", "HAS SPACE 1234", "A" * 31, "SGI045_00149601"])
    def test_invalid(self, code):
        assert not is_valid_barcode(code)

    def test_format_normalises_case_spaces_and_dashes(self):
        assert format_barcode("  sgi045\u201300149601 ") == "SGI045-00149601"
        assert format_barcode("b  1234   abc") == "B 1234 ABC"


class TestConsistencyFilter:
    def test_needs_enough_reads(self):
        f = ConsistencyFilter()
        f.track("XY/77"); f.track("XY/77")
        assert f.consistent() is None
        f.track("noise")
        assert f.consistent() == "XY/77"

    def test_single_reads_never_agree(self):
        f = ConsistencyFilter()
        for c in ("A1", "B2", "C3", "D4"): f.track(c)
        assert f.consistent() is None

    def test_window_forgets_old_reads(self):
        f = ConsistencyFilter(window=3)
        f.track("OLD1"); f.track("OLD1")
        for c in ("N1", "N2", "N3"): f.track(c)
        assert f.consistent() is None
        f.reset()
        assert f.attempts == 0 and len(f.recent) == 0


class TestScanner:
    def test_valid_code_is_accepted_and_auto_advances(self):
        got, done, cb = collecting()
        s = BarcodeScanner(cb, auto_advance_delay=0.01)
        assert s.handle_detection(" sgi045-00149601 ") == "SGI045-00149601"
        assert done.wait(2)
        assert got == ["SGI045-00149601"] and s.last_code == "SGI045-00149601"

    def test_odd_code_needs_repeats(self):
        got, done, cb = collecting()
        s = BarcodeScanner(cb, auto_advance_delay=0.01)
        assert s.handle_detection("XY/77") is None
        assert s.handle_detection("XY/77") is None
        assert s.handle_detection("XY/77") == "XY/77"
        assert done.wait(2)

    def test_implausible_repeats_are_ignored(self):
        s = BarcodeScanner(lambda code: None)
        for _ in range(4):
            assert s.handle_detection("#?") is None

    def test_stop_cancels_pending_advance(self):
        got, done, cb = collecting()
        s = BarcodeScanner(cb, auto_advance_delay=0.2)
        s.handle_detection("SGI045-00149601")
        s.stop(); s.stop()
        assert not done.wait(0.4)
        assert got == []

    def test_unavailable_camera_raises(self):
        cam = FakeCamera([], opened=False)
        s = BarcodeScanner(lambda code: None, camera_factory=lambda index: cam)
        with pytest.raises(CameraUnavailable):
            s.start()
        assert cam.released.is_set() and not s.scanning

    def test_missing_camera_device(self):
        s = BarcodeScanner(lambda code: None, camera_factory=lambda index: None)
        with pytest.raises(CameraUnavailable) as exc:
            s.start()
        assert exc.value.to_dict()["category"] == "camera"

    def test_camera_loop_detects_and_releases(self):
        got, done, cb = collecting()
        frames = ["blank", "blank", "code"]
        cam = FakeCamera(frames * 20)
        decoder = lambda frame: ["SGI045-00149601"] if frame == "code" else []
        s = BarcodeScanner(cb, decoder=decoder, auto_advance_delay=0.01, camera_factory=lambda index: cam)
        s.start()
        assert done.wait(2)
        assert got == ["SGI045-00149601"]
        assert cam.released.wait(2)
        assert not s.scanning

    def test_camera_without_frames_stops(self):
        cam = FakeCamera([])
        s = BarcodeScanner(lambda code: None, decoder=lambda frame: [], camera_factory=lambda index: cam)
        s.start()
        assert cam.released.wait(2)
        s.stop()
        assert not s.scanning
