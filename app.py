from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, HTTPException, Depends, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from auth import SessionManager, verify_force_secret
from environments import EnvironmentSelector
from errors import GateError, AuthorizationError, RequestError
from geolocation import GeolocationProvider, parse_plant_list, nearest_plant
from notifications import SessionNotifier
from proxy_client import ProxyClient
from scanner import BarcodeScanner
from storage import LocalStorage
from workflow import TripWorkflow
from schemas import *

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

storage = LocalStorage.from_url(config.DATABASE_URL)
environments = EnvironmentSelector(storage)
proxy = ProxyClient(environments)
notifier = SessionNotifier()
sessions = SessionManager(storage, environments, proxy, notifier)
geolocation = GeolocationProvider()
workflow = TripWorkflow(storage, proxy, sessions)
last_scan = {"code": None, "error": None}

def on_scanned(code: str):
    # camera acceptance auto-advances into the trip lookup
    last_scan.update(code=code, error=None)
    try:
        workflow.resolve_code(code)
    except GateError as e:
        logger.warning("scanned code %s not resolved: %s", code, e.message)
        last_scan["error"] = e.to_dict()

scanner = BarcodeScanner(on_scanned)
def on_session_event(event: str, *_):
    if event == "logout":
        scanner.stop(); workflow.last_completed = None

sessions.listeners.subscribe(on_session_event)

@asynccontextmanager
async def lifespan(_app):
    yield
    scanner.stop(); sessions.stop_monitoring()

app = FastAPI(title="Truck Gate Check", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=[config.ALLOWED_ORIGIN], allow_headers=["*"], allow_methods=["*"])

def http_status(e: GateError) -> int:
    if isinstance(e, RequestError) and e.status: return e.status
    if isinstance(e, AuthorizationError) and e.status in (401, 403): return e.status
    return e.status_code

@app.exception_handler(GateError)
def gate_error(request, exc: GateError):
    return JSONResponse(status_code=http_status(exc), content=exc.to_dict())

def require_session():
    try:
        user = sessions.require_session()
    except GateError as e:
        raise HTTPException(401, e.message)
    sessions.record_activity()
    return user

def session_out():
    user = sessions.current_user
    return {"user": user.model_dump(mode="json", by_alias=True, exclude={"bearer_token", "api_response"}) if user else None,
            "session": sessions.get_session_info().model_dump(mode="json", by_alias=True)}

# auth

@app.post("/auth/login")
def login(data: LoginIn):
    location = None
    if data.latitude is not None and data.longitude is not None:
        location = geolocation.from_fix(data.latitude, data.longitude, data.accuracy)
    sessions.login(data.emp_code, data.site, location)
    return session_out()

@app.get("/auth/force-login/{secret}/{site}")
def force_login(secret: str, site: str):
    if not verify_force_secret(secret): raise HTTPException(403, "Bad secret")
    sessions.force_login(site)
    return {"redirect": "/trip-selection", **session_out()}

@app.post("/auth/logout")
def logout(): return {"redirect": sessions.logout()}

@app.get("/auth/session")
def session_info(): return session_out()

@app.post("/auth/activity")
def activity(user: AuthSession = Depends(require_session)): return session_out()

@app.post("/auth/extend")
def extend(user: AuthSession = Depends(require_session)):
    sessions.extend_session(); return session_out()

@app.get("/auth/notification")
def notification():
    n = notifier.current
    return n.model_dump(mode="json", by_alias=True) if n else None

# environments and plants

@app.get("/environments")
def list_environments():
    return {"current": environments.current.name,
            "items": [e.model_dump(by_alias=True) for e in environments.list()]}

@app.put("/environment")
def set_environment(data: EnvironmentIn):
    env = environments.set_environment(data.name)
    return env.model_dump(by_alias=True)

@app.get("/plants", response_model=List[Plant])
def plants(): return parse_plant_list(proxy.get_plant_list())

@app.get("/plants/nearest", response_model=NearestPlantOut)
def plants_nearest(lat: float, lon: float, accuracy: Optional[float] = None):
    location = geolocation.from_fix(lat, lon, accuracy)
    best = nearest_plant(location, parse_plant_list(proxy.get_plant_list()))
    if best is None: raise HTTPException(404, "No plant with coordinates")
    return {"plant": best[0], "distance_km": round(best[1], 3)}

# trip workflow

@app.get("/trip", response_model=TripView)
def trip(user: AuthSession = Depends(require_session)): return workflow.view()

@app.get("/trip/spk")
def trip_spk(plate: str, user: AuthSession = Depends(require_session)):
    items = workflow.search_spk(plate)
    return {"items": items, "selected": items[0] if len(items) == 1 else None}

@app.post("/trip/scan")
def trip_scan(data: ScanIn, user: AuthSession = Depends(require_session)):
    scanner.stop()
    info = workflow.resolve_code(data.code, data.plate)
    return {"stage": workflow.stage.value, "trip": info.model_dump(by_alias=True)}

@app.post("/scanner/start")
def scanner_start(user: AuthSession = Depends(require_session)):
    last_scan.update(code=None, error=None)
    scanner.start()
    return {"scanning": scanner.scanning}

@app.post("/scanner/stop")
def scanner_stop():
    scanner.stop(); return {"scanning": False}

@app.get("/scanner")
def scanner_status(): return {"scanning": scanner.scanning, **last_scan}

@app.post("/trip/type")
def trip_type(data: TripTypeIn, user: AuthSession = Depends(require_session)):
    return {"stage": workflow.select_trip_type(data.trip_type).value}

@app.post("/trip/checklist")
def trip_checklist(data: ChecklistIn, user: AuthSession = Depends(require_session)):
    return {"stage": workflow.submit_checklist(data.items).value}

@app.put("/trip/entry")
def trip_entry(data: EntryIn, user: AuthSession = Depends(require_session)):
    return workflow.update_entry(data.odometer, data.cargo, data.notes).model_dump(by_alias=True)

@app.post("/trip/photos/{kind}")
def trip_photo(kind: str, file: UploadFile = File(...), user: AuthSession = Depends(require_session)):
    url = workflow.attach_photo(kind, file.file.read())
    return {"kind": kind, "size": len(url)}

@app.post("/trip/submit", response_model=SubmissionOut)
def trip_submit(user: AuthSession = Depends(require_session)):
    record, warnings = workflow.submit()
    return {"record": record, "warnings": warnings}

@app.post("/trip/new", response_model=TripView)
def trip_new(user: AuthSession = Depends(require_session)):
    workflow.start_new_trip(); return workflow.view()

@app.get("/trips", response_model=List[TripRecord])
def trips(user: AuthSession = Depends(require_session)): return workflow.history()

@app.get("/health")
def health(): return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
