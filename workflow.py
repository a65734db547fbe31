import enum
import logging
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import ValidationError as SchemaError

import config
from errors import (BusinessRuleError, GateError, OdometerWarning, ValidationError, describe_lookup_error,
                    describe_process_error, describe_submit_error)
from photos import compress_image, to_data_url
from schemas import ChecklistItem, TripEntry, TripInfo, TripRecord, TripState, TripSubmission, TripView
from storage import TripStateStore

logger = logging.getLogger(__name__)

PHOTO_KINDS = ("odometer", "cargo")
MIN_PLATE_LENGTH = 4

DEFAULT_CHECKLIST = (
    ChecklistItem(id="chk1", label="Surat Jalan"),
    ChecklistItem(id="chk2", label="APD"),
    ChecklistItem(id="chk3", label="Kendaraan Layak Jalan"),
)


class Stage(str, enum.Enum):
    SCAN_BARCODE = "scan-barcode"
    TRIP_SELECTION = "trip-selection"
    CHECKLIST = "checklist"
    ODOMETER = "odometer"
    COMPLETE = "trip-complete"


def parse_reading(raw: Optional[str], label: str) -> float:
    """Non-negative finite number, e.g. "12.5" -> 12.5; "-1", "abc" and blanks are rejected."""
    text = (raw or "").strip()
    if not text: raise ValidationError(f"{label} wajib diisi.")
    try:
        value = float(text)
    except ValueError:
        raise ValidationError(f"{label} harus berupa angka yang valid dan tidak negatif.") from None
    if not math.isfinite(value) or value < 0:
        raise ValidationError(f"{label} harus berupa angka yang valid dan tidak negatif.")
    return value


def _number(v) -> Optional[float]:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _result_rows(body, key: str) -> List[dict]:
    # ERP lists come as {key: {"Result": [...]}} or, on some functions, {key: [...]}
    block = body.get(key) if isinstance(body, dict) else None
    rows = block.get("Result") if isinstance(block, dict) else block
    return [r for r in rows if isinstance(r, dict)] if isinstance(rows, list) else []


class TripWorkflow:
    def __init__(self, storage, proxy, sessions, checklist=DEFAULT_CHECKLIST,
                 photo_required_sites=None, clock=lambda: datetime.now(timezone.utc)):
        self.store = TripStateStore(storage); self.proxy = proxy; self.sessions = sessions
        self.checklist_template = [c.model_copy() for c in checklist]
        self.photo_required_sites = config.PHOTO_REQUIRED_SITES if photo_required_sites is None else photo_required_sites
        self.clock = clock
        self.last_completed: Optional[TripRecord] = None

    # state

    @property
    def state(self) -> TripState: return self.store.load()

    def stage_of(self, s: TripState) -> Stage:
        if not s.truck_barcode or not s.trip_number:
            return Stage.COMPLETE if self.last_completed else Stage.SCAN_BARCODE
        if s.trip_type is None: return Stage.TRIP_SELECTION
        if s.trip_type == "OUT" and not self._checklist_passed(s): return Stage.CHECKLIST
        return Stage.ODOMETER

    @property
    def stage(self) -> Stage: return self.stage_of(self.state)

    def _checklist_passed(self, s: TripState) -> bool:
        return bool(s.checklist) and s.pending is not None and all(i.checked for i in s.checklist if i.required)

    def _require(self, s: TripState, *allowed: Stage):
        stage = self.stage_of(s)
        if stage in allowed: return
        if stage in (Stage.SCAN_BARCODE, Stage.COMPLETE):
            raise ValidationError("Data trip tidak ditemukan. Silakan scan barcode terlebih dahulu.")
        raise ValidationError(f"Langkah ini tidak tersedia pada tahap {stage.value}.")

    def photos_required(self) -> bool:
        user = self.sessions.current_user
        return user is not None and user.site in self.photo_required_sites

    def view(self) -> TripView:
        s = self.state; info = s.trip_info or TripInfo()
        return TripView(stage=self.stage_of(s).value, truck_barcode=s.truck_barcode, trip_type=s.trip_type,
                        trip_number=s.trip_number, plate_number=info.truck_plate, driver=info.driver or s.driver or None,
                        co_driver=info.co_driver, route_info=info.route_id,
                        checklist=s.checklist or [c.model_copy() for c in self.checklist_template],
                        entry=s.entry, photos=sorted(s.photos), photos_required=self.photos_required(),
                        reference_odometer=s.reference_odometer, reference_total=s.reference_total)

    # scan

    def search_spk(self, plate: str) -> List[str]:
        self.sessions.require_session()
        plate = (plate or "").strip().upper()
        if len(plate) < MIN_PLATE_LENGTH: return []
        try:
            body = self.proxy.get_all_trip_data(plate)
        except GateError as e:
            self._lookup_failed(e)
        return [str(r["tripNumber"]) for r in _result_rows(body, "TripData") if r.get("tripNumber")]

    def resolve_code(self, code: str, plate: Optional[str] = None) -> TripInfo:
        self.sessions.require_session()
        code = (code or "").strip()
        if not code: raise ValidationError("Silakan scan atau masukkan barcode")
        try:
            body = self.proxy.get_trip_data(code)
        except GateError as e:
            self._lookup_failed(e)
        try:
            info = TripInfo.model_validate(body if isinstance(body, dict) else {})
        except SchemaError as e:
            logger.warning("unreadable trip header for %s: %s", code, e)
            raise BusinessRuleError("Data trip dari server tidak dapat dibaca.", title="Data Trip Tidak Valid",
                                    payload=body) from e
        if plate and plate.strip(): info.truck_plate = plate.strip().upper()
        # the scanned barcode doubles as the trip number (surat jalan)
        s = TripState(truck_barcode=code, trip_number=code, driver=info.driver or "", trip_info=info)
        self.last_completed = None
        self.store.clear(); self.store.save(s)
        logger.info("trip %s resolved (plate %s)", code, info.truck_plate)
        return info

    def _lookup_failed(self, e: GateError):
        # a rejection inside a 2xx body keeps the ERP's own wording
        if isinstance(e, BusinessRuleError): raise e
        title, message = describe_lookup_error(e.status if e.status is not None else 0)
        raise type(e)(message, title=title, status=e.status, payload=e.payload) from e

    # trip type

    def select_trip_type(self, trip_type: str) -> Stage:
        self.sessions.require_session()
        s = self.state
        self._require(s, Stage.TRIP_SELECTION, Stage.CHECKLIST, Stage.ODOMETER)
        if trip_type not in ("IN", "OUT"): raise ValidationError("Tipe trip harus IN atau OUT.")
        if s.trip_type != trip_type:
            s.checklist = None; s.pending = None; s.entry = TripEntry()
            s.reference_odometer = None; s.reference_total = None
        s.trip_type = trip_type
        if trip_type == "IN": s.reference_odometer = self._reference_odometer(s.trip_number)
        else: s.reference_total = self._reference_total(s.trip_number)
        if trip_type == "OUT" and s.reference_total is not None and not s.entry.cargo:
            s.entry.cargo = f"{s.reference_total:g}"
        self.store.save(s)
        return self.stage_of(s)

    def _reference_odometer(self, trip_num: str) -> Optional[float]:
        try:
            body = self.proxy.get_out_truck_check(trip_num)
        except GateError as e:
            logger.warning("no reference odometer for %s: %s", trip_num, e.message); return None
        for r in _result_rows(body, "TruckCheckData"):
            if str(r.get("TripNum", "")).upper() == trip_num.upper():
                return _number(r.get("Odometer"))
        return None

    def _reference_total(self, trip_num: str) -> Optional[float]:
        try:
            body = self.proxy.get_total_from_trip_number(trip_num)
        except GateError as e:
            logger.warning("no load total for %s: %s", trip_num, e.message); return None
        return _number(body.get("total")) if isinstance(body, dict) else None

    # checklist

    def submit_checklist(self, checked: Dict[str, bool]) -> Stage:
        self.sessions.require_session()
        s = self.state
        self._require(s, Stage.CHECKLIST, Stage.ODOMETER)
        if s.trip_type != "OUT": raise ValidationError("Checklist hanya untuk trip OUT.")
        items = [c.model_copy(update={"checked": bool(checked.get(c.id, False))}) for c in self.checklist_template]
        if not all(i.checked for i in items if i.required):
            raise ValidationError("Semua item checklist wajib harus dicentang sebelum melanjutkan.")
        s.checklist = items
        s.pending = {"type": s.trip_type, "tripNum": s.trip_number, "tripDriver": s.driver,
                     **{i.id: i.checked for i in items}}
        self.store.save(s)
        return self.stage_of(s)

    # odometer / cargo

    def update_entry(self, odometer: Optional[str] = None, cargo: Optional[str] = None,
                     notes: Optional[str] = None) -> TripEntry:
        s = self.state
        self._require(s, Stage.ODOMETER)
        e = s.entry
        for field, value in (("odometer", odometer), ("cargo", cargo)):
            if value is not None and value != getattr(e, field):
                setattr(e, field, value); e.warned.pop(field, None)
        if notes is not None: e.notes = notes
        self.store.save(s)
        return e

    def attach_photo(self, kind: str, raw: bytes) -> str:
        if kind not in PHOTO_KINDS: raise ValidationError(f"Jenis foto tidak dikenal: {kind}")
        s = self.state
        self._require(s, Stage.ODOMETER)
        photo = compress_image(raw)
        s.photos[kind] = to_data_url(photo); s.photo_file_ids = []
        self.store.save(s)
        logger.info("%s photo attached (%dx%d, %d bytes)", kind, photo.width, photo.height, len(photo.data))
        return s.photos[kind]

    def _validate(self, s: TripState) -> TripSubmission:
        e = s.entry
        odometer = parse_reading(e.odometer, "Pembacaan odometer")
        need_photos = self.photos_required()
        if need_photos:
            missing = [k for k in PHOTO_KINDS if not s.photos.get(k)]
            if missing: raise ValidationError("Foto " + " dan ".join(missing) + " wajib diambil.")
        cargo = parse_reading(e.cargo, "Jumlah muatan") if (need_photos or e.cargo.strip()) else None
        ref = s.reference_odometer
        if s.trip_type == "IN" and ref is not None and odometer < ref and not e.warned.get("odometer"):
            e.warned["odometer"] = True
            self.store.save(s)
            raise OdometerWarning(f"Odometer ({odometer:g}) lebih kecil dari odometer keluar ({ref:g}). "
                                  "Periksa kembali, atau kirim ulang untuk konfirmasi.")
        flags = {k: v for k, v in (s.pending or {}).items() if k.startswith("chk")} if s.trip_type == "OUT" else {}
        return TripSubmission(odometer_reading=odometer, cargo_quantity=cargo, notes=e.notes, checklist_flags=flags,
                              photos=[s.photos[k] for k in PHOTO_KINDS if s.photos.get(k)],
                              trip_number=s.trip_number, trip_type=s.trip_type)

    def submit(self):
        """Send the trip. Returns (record, warnings); trip data is cleared only after the ERP accepted it."""
        self.sessions.require_session()
        s = self.state
        self._require(s, Stage.ODOMETER)
        sub = self._validate(s)
        if s.photos and not s.photo_file_ids:
            token = self.sessions.require_token()
            condition = all(i.checked for i in s.checklist) if s.checklist else True
            body = self.proxy.upload_photos(token, sub.trip_number, s.photos.get("odometer", ""),
                                            s.photos.get("cargo", ""), condition)
            # a resubmit after a failed send reuses these ids
            s.photo_file_ids = [str(i) for i in body.get("fileIds") or []] if isinstance(body, dict) else []
            self.store.save(s)
        file_ids = list(s.photo_file_ids)
        try:
            self.proxy.send_trip_data(sub.to_payload())
        except GateError as e:
            logger.warning("trip %s not accepted: %s", sub.trip_number, e.message)
            if e.status is not None: e.message = describe_submit_error(e.status)
            raise
        warnings = []
        if s.trip_type == "OUT":
            try:
                self.proxy.process_trip_data(sub.trip_number)
            except GateError as e:
                logger.warning("trip %s staged but not processed: %s", sub.trip_number, e.message)
                warnings.append(describe_process_error(e.status) if e.status is not None else
                                "Data sudah tersimpan di staging table, tapi gagal diproses ke Epicor: " + e.message)
        record = TripRecord(truck_barcode=s.truck_barcode, trip_type=s.trip_type, trip_number=s.trip_number,
                            odometer_reading=sub.odometer_reading, cargo_quantity=sub.cargo_quantity, notes=sub.notes,
                            timestamp=self.clock(), plate_number=s.trip_info.truck_plate if s.trip_info else None,
                            checklist_data=s.checklist, photo_file_ids=file_ids)
        self.store.append_history(record)
        self.store.clear()
        self.last_completed = record
        logger.info("trip %s (%s) completed", record.trip_number, record.trip_type)
        return record, warnings

    def start_new_trip(self):
        self.store.clear(); self.last_completed = None

    def history(self) -> List[TripRecord]: return self.store.history()
