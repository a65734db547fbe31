import json
import logging
from typing import Any, Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, StorageEntry
from schemas import ChecklistItem, TripEntry, TripInfo, TripRecord, TripState

logger = logging.getLogger(__name__)

AUTH_USER = "smt_auth_user"
SELECTED_ENVIRONMENT = "selectedEnvironment"
TRUCK_BARCODE = "currentTruckBarcode"
TRIP_TYPE = "tripType"
TRIP_NUMBER = "tripNumber"
TRIP_DRIVER = "tripDriver"
CURRENT_TRIP_DATA = "currentTripData"
CHECKLIST_DATA = "checklistData"
PENDING_TRIP_DATA = "tripData"
TRIP_ENTRY = "tripEntry"
TRIP_PHOTOS = "tripPhotos"
TRIP_PHOTO_FILE_IDS = "tripPhotoFileIds"
REFERENCE_ODOMETER = "referenceOdometer"
REFERENCE_TOTAL = "referenceTotal"
TRIP_HISTORY = "trips"

TRIP_KEYS = (TRUCK_BARCODE, TRIP_TYPE, TRIP_NUMBER, TRIP_DRIVER, CURRENT_TRIP_DATA, CHECKLIST_DATA,
             PENDING_TRIP_DATA, TRIP_ENTRY, TRIP_PHOTOS, TRIP_PHOTO_FILE_IDS, REFERENCE_ODOMETER, REFERENCE_TOTAL)


def make_session_factory(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    kw = {"poolclass": StaticPool} if url in ("sqlite://", "sqlite:///:memory:") else {}
    engine = create_engine(url, connect_args=connect_args, **kw)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


class LocalStorage:
    def __init__(self, session_factory):
        self._sessions = session_factory

    @classmethod
    def from_url(cls, url: str): return cls(make_session_factory(url))

    def get_item(self, key: str) -> Optional[str]:
        with self._sessions() as db:
            row = db.query(StorageEntry).filter(StorageEntry.key == key).first()
            return row.value if row else None

    def set_item(self, key: str, value: str):
        with self._sessions() as db:
            row = db.query(StorageEntry).filter(StorageEntry.key == key).first()
            if row: row.value = value
            else: db.add(StorageEntry(key=key, value=value))
            db.commit()

    def remove_item(self, *keys: str):
        with self._sessions() as db:
            db.query(StorageEntry).filter(StorageEntry.key.in_(keys)).delete(synchronize_session=False)
            db.commit()

    def clear(self):
        with self._sessions() as db:
            db.query(StorageEntry).delete(); db.commit()

    def keys(self):
        with self._sessions() as db:
            return [k for (k,) in db.query(StorageEntry.key).order_by(StorageEntry.key)]

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get_item(key)
        if raw is None: return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("discarding unreadable value under %s", key)
            return default

    def set_json(self, key: str, value: Any):
        self.set_item(key, json.dumps(value))


class TripStateStore:
    """Reads and writes TripState over the fixed trip keys.

    Partial or corrupt values load as empty fields, which the workflow treats
    as "restart from scan".
    """

    def __init__(self, storage: LocalStorage):
        self.storage = storage

    def load(self) -> TripState:
        s = self.storage
        state = TripState(truck_barcode=s.get_item(TRUCK_BARCODE) or "", trip_number=s.get_item(TRIP_NUMBER) or "",
                          driver=s.get_item(TRIP_DRIVER) or "")
        if s.get_item(TRIP_TYPE) in ("IN", "OUT"): state.trip_type = s.get_item(TRIP_TYPE)
        state.trip_info = self._model(TripInfo, s.get_json(CURRENT_TRIP_DATA))
        items = s.get_json(CHECKLIST_DATA)
        if isinstance(items, list):
            try:
                state.checklist = [ChecklistItem.model_validate(i) for i in items]
            except SchemaError:
                logger.warning("discarding unreadable checklist snapshot")
        pending = s.get_json(PENDING_TRIP_DATA)
        state.pending = pending if isinstance(pending, dict) else None
        state.entry = self._model(TripEntry, s.get_json(TRIP_ENTRY)) or TripEntry()
        photos = s.get_json(TRIP_PHOTOS)
        state.photos = {k: v for k, v in photos.items() if isinstance(v, str)} if isinstance(photos, dict) else {}
        file_ids = s.get_json(TRIP_PHOTO_FILE_IDS)
        state.photo_file_ids = [str(i) for i in file_ids] if isinstance(file_ids, list) else []
        state.reference_odometer = self._number(s.get_json(REFERENCE_ODOMETER))
        state.reference_total = self._number(s.get_json(REFERENCE_TOTAL))
        return state

    def save(self, state: TripState):
        s = self.storage
        self._put(TRUCK_BARCODE, state.truck_barcode or None)
        self._put(TRIP_TYPE, state.trip_type)
        self._put(TRIP_NUMBER, state.trip_number or None)
        self._put(TRIP_DRIVER, state.driver or None)
        self._put_json(CURRENT_TRIP_DATA, state.trip_info.model_dump(by_alias=True) if state.trip_info else None)
        self._put_json(CHECKLIST_DATA, [i.model_dump(by_alias=True) for i in state.checklist] if state.checklist else None)
        self._put_json(PENDING_TRIP_DATA, state.pending)
        s.set_json(TRIP_ENTRY, state.entry.model_dump(by_alias=True))
        self._put_json(TRIP_PHOTOS, state.photos or None)
        self._put_json(TRIP_PHOTO_FILE_IDS, state.photo_file_ids or None)
        self._put_json(REFERENCE_ODOMETER, state.reference_odometer)
        self._put_json(REFERENCE_TOTAL, state.reference_total)

    def clear(self): self.storage.remove_item(*TRIP_KEYS)

    def history(self):
        rows = self.storage.get_json(TRIP_HISTORY, [])
        out = []
        for r in rows if isinstance(rows, list) else []:
            try:
                out.append(TripRecord.model_validate(r))
            except SchemaError:
                logger.warning("skipping unreadable trip history row")
        return out

    def append_history(self, record: TripRecord):
        rows = self.storage.get_json(TRIP_HISTORY, [])
        if not isinstance(rows, list): rows = []
        rows.append(record.model_dump(mode="json", by_alias=True))
        self.storage.set_json(TRIP_HISTORY, rows)

    def _put(self, key, value):
        if value is None: self.storage.remove_item(key)
        else: self.storage.set_item(key, value)

    def _put_json(self, key, value):
        if value is None: self.storage.remove_item(key)
        else: self.storage.set_json(key, value)

    @staticmethod
    def _model(cls, data):
        if not isinstance(data, dict): return None
        try:
            return cls.model_validate(data)
        except SchemaError:
            return None

    @staticmethod
    def _number(v):
        return float(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else None
