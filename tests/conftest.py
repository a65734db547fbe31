import io
import json
import os
import sys
import time
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from passlib.hash import bcrypt
from PIL import Image

# Set test environment variables BEFORE importing the app modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PHOTO_REQUIRED_SITES"] = "SGI045"
os.environ["FORCE_LOGIN_SECRET_HASH"] = bcrypt.hash("gate-operator")
os.environ["LOG_LEVEL"] = "WARNING"

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from auth import SessionManager
from environments import EnvironmentSelector
from proxy_client import ProxyClient
from schemas import UserLocation
from storage import LocalStorage
from workflow import TripWorkflow

PROXY = "http://proxy.test/api"
PHOTOS = "http://photos.test/api"


def make_token(seconds=3 * 3600, **claims):
    payload = {"username": "EMP01", "empCode": "EMP01", "site": "SGI045", "exp": int(time.time()) + seconds}
    payload.update(claims)
    return jwt.encode(payload, "proxy-secret", algorithm="HS256")


def image_bytes(width, height, fmt="PNG"):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (200, 40, 40)).save(buf, format=fmt)
    return buf.getvalue()


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self.content = b"" if body is None else (body.encode() if isinstance(body, str) else json.dumps(body).encode())
        self.text = self.content.decode()

    def json(self):
        return json.loads(self.content)


class FakeHttp:
    """Stands in for requests.Session; routes are keyed by the last path segment."""

    def __init__(self):
        self.calls = []
        self.routes = {
            "login": (200, {}),
            "get-jwt": (200, {"token": make_token()}),
            "get-trip-data": (200, {"driver": "BUDI SANTOSO", "codriver": "AGUS PRASETYO", "truckPlate": "B 1234 ABC",
                                    "routeID": "R-01", "plant": "SGI045", "ETADate": "2026-02-20T08:00:00Z",
                                    "truckDesc": "TRONTON 10 TON"}),
            "get-all-trip-data": (200, {"TripData": {"Result": [{"tripNumber": "SGI053-00149601"},
                                                                {"tripNumber": "SGI053-00149602"}]}}),
            "get-plant-list": (200, {"Result": {"Plant": [
                {"Plant": "SGI053", "Name": "SGI YOGYAKARTA", "Lat": -7.797068, "Long": 110.370529},
                {"Plant": "SGI045", "Name": "SGI SEMARANG", "Lat": -6.966667, "Long": 110.416664},
                {"Plant": "SGI001", "Name": "SGI JAKARTA", "Lat": -6.2, "Long": 106.816666}]}}),
            "get-out-truck-check": (200, {"TruckCheckData": {"Result": [
                {"Company": "SGI", "TripNum": "SGI045-00149601", "Odometer": 125000}]}}),
            "get-total-from-trip-number": (200, {"total": 15000, "type": "OUT"}),
            "send-trip-data": (200, {"success": True, "message": "Data berhasil disimpan"}),
            "process-trip-data": (200, {"success": True}),
            "upload-photos": (200, {"success": True, "fileIds": ["drive-1", "drive-2"]}),
        }

    def set(self, name, status, body=None):
        self.routes[name] = (status, body)

    def fail(self, name, exc):
        self.routes[name] = exc

    def called(self, name):
        return [c for c in self.calls if c["url"].rsplit("/", 1)[-1] == name]

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers})
        route = self.routes[url.rsplit("/", 1)[-1]]
        if isinstance(route, Exception): raise route
        return FakeResponse(*route)


class Clock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += timedelta(**kw)


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return LocalStorage.from_url("sqlite://")


@pytest.fixture
def envs(store):
    return EnvironmentSelector(store)


@pytest.fixture
def proxy(envs, http):
    return ProxyClient(envs, base_url=PROXY, photo_url=PHOTOS, http=http)


@pytest.fixture
def sessions(store, envs, proxy, clock):
    return SessionManager(store, envs, proxy, clock=clock, monitor=False)


@pytest.fixture
def location():
    return UserLocation(latitude=-6.9667, longitude=110.4167, accuracy=12.0)


@pytest.fixture
def logged_in(sessions, location):
    return sessions.login("emp01", "sgi045", location)


@pytest.fixture
def workflow(store, proxy, sessions, clock):
    return TripWorkflow(store, proxy, sessions, photo_required_sites=["SGI045"], clock=clock)
