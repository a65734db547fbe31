import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

import config
from errors import BusinessRuleError, ConnectivityError, SessionExpired, error_for_status, upstream_message
from tokens import is_token_expired

logger = logging.getLogger(__name__)

ENDPOINTS = {
    "login": "login", "trip": "get-trip-data", "all_trips": "get-all-trip-data",
    "send": "send-trip-data", "plants": "get-plant-list", "process": "process-trip-data",
    "total": "get-total-from-trip-number", "out_check": "get-out-truck-check",
}


def inspect_body(body: Dict[str, Any]):
    """The ERP can report a rejection inside a 2xx response."""
    if isinstance(body, dict) and (body.get("error") or body.get("Error")):
        raise BusinessRuleError(upstream_message(body) or str(body.get("error") or body.get("Error")), payload=body)
    return body


class ProxyClient:
    def __init__(self, environments, base_url: str = config.PROXY_URL, photo_url: str = config.PHOTO_SERVER_URL,
                 http=None, timeout: float = config.REQUEST_TIMEOUT):
        self.environments = environments
        self.base_url = base_url.rstrip("/"); self.photo_url = photo_url.rstrip("/")
        self.http = http or requests.Session(); self.timeout = timeout

    def _post(self, url: str, body: dict, headers: Optional[dict] = None) -> Any:
        logger.debug("POST %s", url)
        try:
            r = self.http.post(url, json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("POST %s failed: %s", url, e)
            raise ConnectivityError("Tidak dapat terhubung ke server. Periksa koneksi internet Anda.", status=0) from e
        try:
            data = r.json() if r.content else {}
        except ValueError:
            data = r.text
        if r.status_code >= 400:
            logger.warning("POST %s -> %s", url, r.status_code)
            raise error_for_status(r.status_code, upstream_message(data) or f"HTTP {r.status_code}", payload=data)
        return data

    def call(self, name: str, **payload) -> Any:
        body = dict(payload, env=self.environments.current.name)
        return self._post(f"{self.base_url}/{ENDPOINTS[name]}", body)

    def login(self, site: str, emp_code: str, latitude: float, longitude: float):
        return self.call("login", logonSite=site, logonEMP=emp_code, curLatitude=latitude, curLongitude=longitude)

    def get_trip_data(self, trip_num: str): return inspect_body(self.call("trip", tripNum=trip_num))

    def get_all_trip_data(self, plate: str): return inspect_body(self.call("all_trips", truckPlate=plate))

    def send_trip_data(self, payload: Dict[str, Any]): return inspect_body(self.call("send", **payload))

    def get_plant_list(self): return self.call("plants")

    def process_trip_data(self, trip_num: str): return inspect_body(self.call("process", tripNum=trip_num))

    def get_total_from_trip_number(self, trip_num: str): return self.call("total", tripNum=trip_num)

    def get_out_truck_check(self, trip_num: str): return self.call("out_check", tripNum=trip_num)

    def request_token(self, username: str, emp_code: str, site: str) -> str:
        data = self._post(f"{self.photo_url}/get-jwt", {"username": username, "empCode": emp_code, "site": site})
        token = data.get("token") if isinstance(data, dict) else None
        if not token: raise BusinessRuleError("Token tidak diterima dari server.", payload=data)
        return token

    def upload_photos(self, token: Optional[str], trip_num: str, odometer_photo: str = "", cargo_photo: str = "",
                      condition: Optional[bool] = None):
        if is_token_expired(token, datetime.now(timezone.utc)):
            raise SessionExpired("Token upload foto sudah berakhir. Silakan login kembali.")
        body = {"tripNum": trip_num, "odometerPhoto": odometer_photo, "cargoPhoto": cargo_photo}
        if condition is not None: body["condition"] = condition
        data = self._post(f"{self.photo_url}/upload-photos", body, headers={"Authorization": f"Bearer {token}"})
        if isinstance(data, dict) and data.get("success") is False:
            raise BusinessRuleError(upstream_message(data) or "Upload foto gagal.", payload=data)
        return data
