import logging, math, threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from passlib.hash import bcrypt
from pydantic import ValidationError as SchemaError

import config
import storage as keys
from errors import GateError, BusinessRuleError, SessionExpired, ValidationError, describe_login_error
from notifications import Listeners, SessionNotifier
from schemas import AuthSession, SessionInfo, UserLocation
from tokens import is_token_expired

logger = logging.getLogger(__name__)

SESSION_DURATION = timedelta(hours=config.SESSION_DURATION_HOURS)
EXTENSION_WINDOW = timedelta(minutes=config.EXTENSION_WINDOW_MIN)
ACTIVITY_THROTTLE = timedelta(minutes=config.ACTIVITY_THROTTLE_MIN)
LOGIN_PATH = "/login"

def now(): return datetime.now(timezone.utc)

def aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

def make_hash(secret: str): return bcrypt.hash(secret)

def verify_force_secret(secret: str, hashed: str = None) -> bool:
    hashed = config.FORCE_LOGIN_SECRET_HASH if hashed is None else hashed
    if not secret or not hashed: return False
    try:
        return bcrypt.verify(secret, hashed)
    except ValueError:
        logger.error("FORCE_LOGIN_SECRET_HASH is not a bcrypt hash")
        return False

def is_login_success(body) -> bool:
    """AuthenticateLogon answers `{}` on success; some deployments send an explicit flag instead.
    Any other shape, including None, is a failed logon."""
    if not isinstance(body, dict): return False
    if len(body) == 0: return True
    return body.get("success") is True or body.get("Success") is True \
        or body.get("status") == "success" or body.get("Status") == "success"

def determine_role(emp_code: str) -> str:
    if "SUP" in emp_code or "MGR" in emp_code: return "supervisor"
    if "ADM" in emp_code: return "admin"
    return "driver"


class IntervalTimer:
    """Calls fn every `interval` seconds on a daemon thread until cancelled."""

    def __init__(self, interval: float, fn, name: str):
        self.interval = interval; self.fn = fn; self.name = name
        self._stop: Optional[threading.Event] = None

    @property
    def running(self): return self._stop is not None and not self._stop.is_set()

    def start(self):
        if self.running: return
        stop = self._stop = threading.Event()
        threading.Thread(target=self._run, args=(stop,), name=self.name, daemon=True).start()

    def _run(self, stop):
        while not stop.wait(self.interval):
            try:
                self.fn()
            except Exception:
                logger.exception("%s tick failed", self.name)

    def cancel(self):
        if self._stop is not None: self._stop.set()
        self._stop = None


class SessionManager:
    """Owns the authenticated session record, its expiry and the upload token."""

    def __init__(self, storage, environments, proxy, notifier: SessionNotifier = None, clock=now, monitor=True):
        self.storage = storage; self.environments = environments; self.proxy = proxy
        self.notifier = notifier or SessionNotifier(); self.clock = clock; self.monitor = monitor
        self.listeners = Listeners()
        self._user: Optional[AuthSession] = None
        self._last_activity_update: Optional[datetime] = None
        self._session_timer = IntervalTimer(config.SESSION_CHECK_SEC, self.check_session, "session-check")
        self._token_timer = IntervalTimer(config.TOKEN_CHECK_SEC, self.check_token, "token-check")
        self._restore()

    @property
    def current_user(self) -> Optional[AuthSession]: return self._user

    # login / logout

    def login(self, emp_code: str, site: str, location: Optional[UserLocation]) -> AuthSession:
        self.environments.reset()
        emp = (emp_code or "").strip().upper(); site = (site or "").strip().upper()
        if not emp: raise ValidationError("Silakan masukkan kode karyawan Anda")
        if not site: raise ValidationError("Silakan masukkan kode site")
        if location is None: raise ValidationError("Lokasi belum terdeteksi. Silakan tunggu atau refresh halaman.")
        try:
            body = self.proxy.login(site, emp, location.latitude, location.longitude)
        except GateError as e:
            status = e.status if e.status is not None else 0
            logger.warning("logon rejected for %s@%s (status %s)", emp, site, status)
            raise type(e)(describe_login_error(status, e.payload), status=e.status, payload=e.payload) from e
        if not is_login_success(body):
            logger.warning("logon for %s@%s answered without success: %r", emp, site, body)
            raise BusinessRuleError(describe_login_error(200, body), payload=body)
        t = self.clock()
        user = AuthSession(username=emp, emp_code=emp, site=site, role=determine_role(emp), login_time=t,
                           last_activity_time=t, session_expiry_time=t + SESSION_DURATION, location=location,
                           api_response=body)
        user.bearer_token = self._fetch_token(user)
        self._set_user(user)
        logger.info("user %s logged in at %s, session until %s", emp, site, user.session_expiry_time)
        self.listeners.emit("login", user)
        return user

    def force_login(self, site: str) -> AuthSession:
        """Operator escape hatch: no credential or location check. Callers verify the shared secret first."""
        self.environments.reset()
        site = (site or "").strip().upper()
        if not site: raise ValidationError("Silakan masukkan kode site")
        t = self.clock()
        user = AuthSession(username="FORCE", emp_code="FORCE", site=site, role="admin", login_time=t,
                           last_activity_time=t, session_expiry_time=t + SESSION_DURATION)
        user.bearer_token = self._fetch_token(user)
        self._set_user(user)
        logger.warning("force login for site %s", site)
        self.listeners.emit("login", user)
        return user

    def logout(self, reason: str = "logout") -> str:
        self.stop_monitoring()
        self._user = None; self._last_activity_update = None
        self.storage.clear()
        self.environments.reset()
        if reason != "logout": self.notifier.expired()
        logger.info("user logged out (%s)", reason)
        self.listeners.emit("logout", LOGIN_PATH)
        return LOGIN_PATH

    def _fetch_token(self, user: AuthSession) -> Optional[str]:
        try:
            return self.proxy.request_token(user.username, user.emp_code, user.site)
        except GateError as e:
            logger.warning("no upload token for %s: %s", user.username, e.message)
            return None

    # derived views

    def is_authenticated(self) -> bool:
        return self._user is not None and self.clock() < self._user.session_expiry_time

    def get_session_info(self) -> SessionInfo:
        if self._user is None: return SessionInfo(is_valid=False)
        t = self.clock(); exp = self._user.session_expiry_time
        minutes = max(0, math.ceil((exp - t).total_seconds() / 60))
        return SessionInfo(is_valid=t < exp, expires_at=exp, minutes_remaining=minutes,
                           last_activity=self._user.last_activity_time)

    def has_role(self, role: str) -> bool: return self._user is not None and self._user.role == role

    def has_any_role(self, roles) -> bool: return self._user is not None and self._user.role in roles

    def require_session(self) -> AuthSession:
        if not self.is_authenticated():
            if self._user is not None: self.logout("expired")
            raise SessionExpired("Sesi Anda telah berakhir. Silakan login kembali.", status=401)
        return self._user

    def require_token(self) -> str:
        user = self.require_session()
        if is_token_expired(user.bearer_token, self.clock()):
            raise SessionExpired("Token upload foto sudah berakhir. Silakan login kembali.", status=401)
        return user.bearer_token

    # activity

    def record_activity(self) -> bool:
        """Throttled entry point for user-interaction events."""
        t = self.clock()
        if self._last_activity_update is not None and t - self._last_activity_update < ACTIVITY_THROTTLE: return False
        self._last_activity_update = t
        self.update_last_activity()
        return True

    def update_last_activity(self) -> bool:
        if self._user is None: return False
        t = self.clock()
        self._user.last_activity_time = t
        if self._user.session_expiry_time - t > EXTENSION_WINDOW:
            self._save(); return False
        self._user.session_expiry_time = t + SESSION_DURATION
        self._save(); self.notifier.extended()
        logger.info("session extended until %s", self._user.session_expiry_time)
        return True

    def extend_session(self) -> bool:
        if self._user is None: return False
        t = self.clock()
        self._user.last_activity_time = t; self._user.session_expiry_time = t + SESSION_DURATION
        self._save(); self.notifier.extended()
        return True

    def revalidate_location(self, provider) -> UserLocation:
        user = self.require_session()
        user.location = provider.get_current_location()
        self._save()
        return user.location

    # monitors

    def check_session(self):
        if self._user is None: return
        t = self.clock(); exp = self._user.session_expiry_time
        if t >= exp:
            logger.info("session expired, logging out"); self.logout("expired"); return
        minutes = math.ceil((exp - t).total_seconds() / 60)
        if minutes <= config.SESSION_WARNING_MIN: self.notifier.warning(minutes)

    def check_token(self):
        if self._user is None or not self._user.bearer_token: return
        if is_token_expired(self._user.bearer_token, self.clock()):
            logger.info("upload token expired, logging out"); self.logout("token_expired")

    def start_monitoring(self):
        if not self.monitor: return
        self._session_timer.start(); self._token_timer.start()

    def stop_monitoring(self):
        self._session_timer.cancel(); self._token_timer.cancel()

    @property
    def monitoring(self): return self._session_timer.running

    # persistence

    def _set_user(self, user: AuthSession):
        self._user = user; self._save(); self.start_monitoring()

    def _save(self):
        self.storage.set_item(keys.AUTH_USER, self._user.model_dump_json(by_alias=True))

    def _restore(self):
        if self.storage.get_item(keys.AUTH_USER) is None: return
        raw = self.storage.get_json(keys.AUTH_USER)
        if isinstance(raw, dict) and not raw.get("lastActivityTime"): raw["lastActivityTime"] = raw.get("loginTime")
        try:
            user = AuthSession.model_validate(raw)
        except SchemaError:
            logger.warning("stored session unreadable, logging out"); self.logout("corrupt"); return
        user.login_time = aware(user.login_time); user.last_activity_time = aware(user.last_activity_time)
        # records written before expiry tracking only carry loginTime
        user.session_expiry_time = aware(user.session_expiry_time) if user.session_expiry_time \
            else user.login_time + SESSION_DURATION
        if self.clock() < user.session_expiry_time:
            self._user = user; self.start_monitoring()
            logger.info("session restored, expires at %s", user.session_expiry_time)
        else:
            logger.info("stored session has expired, logging out"); self.logout("expired")
