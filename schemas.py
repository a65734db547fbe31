from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

TripType = Literal["IN", "OUT"]

class CamelModel(BaseModel):
    # stored and exchanged with the camelCase names the screens already use
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class UserLocation(CamelModel):
    latitude: float; longitude: float
    accuracy: Optional[float] = None
    timestamp: Optional[float] = None

class AuthSession(CamelModel):
    username: str; emp_code: str; site: str; role: str
    login_time: datetime; last_activity_time: datetime
    session_expiry_time: Optional[datetime] = None
    location: Optional[UserLocation] = None
    bearer_token: Optional[str] = None
    api_response: Optional[Any] = None

class SessionInfo(CamelModel):
    is_valid: bool; expires_at: Optional[datetime] = None
    minutes_remaining: int = 0; last_activity: Optional[datetime] = None

class SessionNotification(CamelModel):
    type: Literal["warning", "info", "expired"]; message: str
    minutes_remaining: Optional[int] = None; timestamp: datetime

class ApiEnvironment(CamelModel):
    name: str; display_name: str; base_url: str
    api_key: str = Field(default="", exclude=True)

class Plant(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)
    code: str = Field(alias="Plant"); name: str = Field(default="", alias="Name")
    latitude: Optional[float] = Field(default=None, alias="Lat")
    longitude: Optional[float] = Field(default=None, alias="Long")

class TripInfo(BaseModel):
    """Trip header as GetTripData returns it; unknown ERP fields are kept in the snapshot."""
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)
    driver: Optional[str] = None
    co_driver: Optional[str] = Field(default=None, alias="codriver")
    truck_plate: Optional[str] = Field(default=None, alias="truckPlate")
    route_id: Optional[str] = Field(default=None, alias="routeID")
    plant: Optional[str] = None
    eta_date: Optional[str] = Field(default=None, alias="ETADate")
    truck_desc: Optional[str] = Field(default=None, alias="truckDesc")

class ChecklistItem(CamelModel):
    id: str; label: str; checked: bool = False; required: bool = True

class TripEntry(CamelModel):
    odometer: str = ""; cargo: str = ""; notes: str = ""
    warned: Dict[str, bool] = {}

class TripState(CamelModel):
    truck_barcode: str = ""; trip_type: Optional[TripType] = None
    trip_number: str = ""; driver: str = ""
    trip_info: Optional[TripInfo] = None
    checklist: Optional[List[ChecklistItem]] = None
    pending: Optional[Dict[str, Any]] = None
    entry: TripEntry = TripEntry()
    photos: Dict[str, str] = {}
    photo_file_ids: List[str] = []
    reference_odometer: Optional[float] = None
    reference_total: Optional[float] = None

class TripSubmission(CamelModel):
    odometer_reading: float; cargo_quantity: Optional[float] = None
    notes: str = ""; checklist_flags: Dict[str, bool] = {}
    photos: List[str] = []; trip_number: str; trip_type: TripType

    def to_payload(self) -> Dict[str, Any]:
        body = {"odometer": self.odometer_reading, "type": self.trip_type}
        for i in range(1, 6): body[f"chk{i}"] = bool(self.checklist_flags.get(f"chk{i}", False))
        body.update({"tripNum": self.trip_number, "note": self.notes})
        if self.cargo_quantity is not None: body["cargoQty"] = self.cargo_quantity
        return body

class TripRecord(CamelModel):
    truck_barcode: str; trip_type: TripType; trip_number: str
    odometer_reading: float; cargo_quantity: Optional[float] = None
    notes: str = ""; timestamp: datetime
    plate_number: Optional[str] = None
    checklist_data: Optional[List[ChecklistItem]] = None
    photo_file_ids: List[str] = []

# request/response bodies of the device API

class LoginIn(CamelModel):
    emp_code: str; site: str
    latitude: Optional[float] = None; longitude: Optional[float] = None
    accuracy: Optional[float] = None

class EnvironmentIn(BaseModel):
    name: str

class ScanIn(CamelModel):
    code: str; plate: Optional[str] = None

class TripTypeIn(CamelModel):
    trip_type: TripType

class ChecklistIn(BaseModel):
    items: Dict[str, bool]

class EntryIn(CamelModel):
    odometer: Optional[str] = None; cargo: Optional[str] = None; notes: Optional[str] = None

class TripView(CamelModel):
    stage: str; truck_barcode: str = ""; trip_type: Optional[TripType] = None
    trip_number: str = ""; plate_number: Optional[str] = None
    driver: Optional[str] = None; co_driver: Optional[str] = None; route_info: Optional[str] = None
    checklist: List[ChecklistItem] = []; entry: TripEntry = TripEntry()
    photos: List[str] = []; photos_required: bool = False
    reference_odometer: Optional[float] = None; reference_total: Optional[float] = None

class SubmissionOut(CamelModel):
    record: TripRecord; warnings: List[str] = []

class NearestPlantOut(CamelModel):
    plant: Plant; distance_km: float
