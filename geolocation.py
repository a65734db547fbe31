import logging
import math
import time
from typing import Callable, List, Optional, Tuple

from pydantic import ValidationError as SchemaError

import config
from errors import GateError
from notifications import Listeners
from schemas import Plant, UserLocation

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088

MESSAGES = {
    "unsupported": "Geolocation is not supported on this device.",
    "permission_denied": "User denied the request for Geolocation.",
    "position_unavailable": "Location information is unavailable.",
    "timeout": "The request to get user location timed out.",
}


class LocationError(GateError):
    category = "location"; default_title = "Lokasi Tidak Terdeteksi"

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or MESSAGES.get(code, "Unknown error occurred"))
        self.code = code


def accuracy_class(accuracy: Optional[float]) -> str:
    if accuracy is None: return "unknown"
    if accuracy > 1000: return "low"
    return "medium" if accuracy > 100 else "high"


class GeolocationProvider:
    """Single best-effort position fix.

    `source` is a callable returning (latitude, longitude, accuracy) or a
    UserLocation; it raises LocationError on failure. Without a source the
    fix has to be handed in with from_fix (e.g. taken by the browser).
    """

    def __init__(self, source: Optional[Callable] = None, poor_accuracy_m: float = config.POOR_ACCURACY_M):
        self.source = source; self.poor_accuracy_m = poor_accuracy_m
        self.last: Optional[UserLocation] = None
        self.listeners = Listeners()

    def from_fix(self, latitude, longitude, accuracy=None, timestamp=None) -> UserLocation:
        if latitude is None or longitude is None: raise LocationError("position_unavailable")
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            raise LocationError("position_unavailable", "Koordinat lokasi tidak valid.")
        loc = UserLocation(latitude=latitude, longitude=longitude, accuracy=accuracy,
                           timestamp=timestamp if timestamp is not None else time.time() * 1000)
        self._remember(loc)
        return loc

    def get_current_location(self) -> UserLocation:
        if self.source is None: raise LocationError("unsupported")
        fix = self._read()
        if fix.accuracy is not None and fix.accuracy > self.poor_accuracy_m:
            logger.info("poor accuracy %.0fm, retrying once", fix.accuracy)
            try:
                second = self._read()
            except LocationError as e:
                logger.warning("retry failed (%s), keeping first fix", e.code)
            else:
                if second.accuracy is not None and second.accuracy < fix.accuracy: fix = second
        self._remember(fix)
        return fix

    def _read(self) -> UserLocation:
        raw = self.source()
        if isinstance(raw, UserLocation): return raw
        lat, lon, acc = raw
        return UserLocation(latitude=lat, longitude=lon, accuracy=acc, timestamp=time.time() * 1000)

    def _remember(self, loc: UserLocation):
        level = accuracy_class(loc.accuracy)
        if level in ("low", "medium"): logger.warning("%s accuracy fix: %sm", level.upper(), loc.accuracy)
        else: logger.debug("location fix accuracy %s", level)
        self.last = loc
        self.listeners.emit(loc)


def distance_km(lat1, lon1, lat2, lon2) -> float:
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1; dl = math.radians(lon2 - lon1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def parse_plant_list(body) -> List[Plant]:
    rows = body
    if isinstance(body, dict):
        result = body.get("Result")
        if isinstance(result, dict): rows = result.get("Plant", [])
        else: rows = body.get("plants") or body.get("data") or result or []
    plants = []
    for r in rows if isinstance(rows, list) else []:
        if not isinstance(r, dict) or not r.get("Plant"): continue
        try:
            plants.append(Plant.model_validate(r))
        except SchemaError:
            logger.warning("skipping unreadable plant row %r", r.get("Plant"))
    return plants


def nearest_plant(location: UserLocation, plants: List[Plant]) -> Optional[Tuple[Plant, float]]:
    best = None
    for p in plants:
        if p.latitude is None or p.longitude is None: continue
        d = distance_km(location.latitude, location.longitude, p.latitude, p.longitude)
        if best is None or d < best[1]: best = (p, d)
    return best
