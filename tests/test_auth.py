import json
import threading
from datetime import timedelta

import pytest
import requests

import storage as keys
from auth import IntervalTimer, SessionManager, determine_role, is_login_success, make_hash, verify_force_secret
from errors import AuthorizationError, BusinessRuleError, ConnectivityError, RequestError, ServerError, SessionExpired, ValidationError
from conftest import make_token
from geolocation import GeolocationProvider


class TestLoginClassification:
    def test_empty_object_is_success(self):
        assert is_login_success({})

    @pytest.mark.parametrize("body", [{"success": True}, {"Success": True}, {"status": "success"}, {"Status": "success"}])
    def test_explicit_flags_are_success(self, body):
        assert is_login_success(body)

    @pytest.mark.parametrize("body", [None, [], "", {"success": False}, {"message": "Employee not found"}, {"success": "true"}])
    def test_other_shapes_fail(self, body):
        assert not is_login_success(body)

    def test_roles_from_employee_code(self):
        assert determine_role("SUP001") == "supervisor"
        assert determine_role("MGR9") == "supervisor"
        assert determine_role("ADM01") == "admin"
        assert determine_role("EMP01") == "driver"


class TestLogin:
    def test_successful_login_creates_session(self, sessions, location, http, clock, store):
        user = sessions.login(" emp01 ", "sgi045", location)
        assert user.emp_code == "EMP01" and user.site == "SGI045" and user.role == "driver"
        assert user.session_expiry_time == clock() + timedelta(hours=8.5)
        assert user.bearer_token
        assert sessions.is_authenticated()
        sent = http.called("login")[0]["json"]
        assert sent == {"logonSite": "SGI045", "logonEMP": "EMP01", "curLatitude": location.latitude,
                        "curLongitude": location.longitude, "env": "live"}
        stored = json.loads(store.get_item(keys.AUTH_USER))
        assert stored["empCode"] == "EMP01" and "sessionExpiryTime" in stored

    def test_token_request_failure_does_not_block_login(self, sessions, location, http):
        http.set("get-jwt", 500, {"message": "boom"})
        user = sessions.login("EMP01", "SGI045", location)
        assert user.bearer_token is None and sessions.is_authenticated()

    @pytest.mark.parametrize("emp,site", [("", "SGI045"), ("  ", "SGI045"), ("EMP01", "")])
    def test_blank_credentials_make_no_call(self, sessions, location, http, emp, site):
        with pytest.raises(ValidationError):
            sessions.login(emp, site, location)
        assert http.called("login") == []

    def test_missing_location_makes_no_call(self, sessions, http):
        with pytest.raises(ValidationError):
            sessions.login("EMP01", "SGI045", None)
        assert http.called("login") == []

    def test_non_success_body_is_rejected(self, sessions, location, http):
        http.set("login", 200, {"success": False, "message": "Employee not registered"})
        with pytest.raises(BusinessRuleError) as exc:
            sessions.login("EMP01", "SGI045", location)
        assert exc.value.message == "Employee not registered"
        assert not sessions.is_authenticated()

    def test_connectivity_failure(self, sessions, location, http):
        http.fail("login", requests.ConnectionError("down"))
        with pytest.raises(ConnectivityError) as exc:
            sessions.login("EMP01", "SGI045", location)
        assert "koneksi internet" in exc.value.message

    def test_unauthorized(self, sessions, location, http):
        http.set("login", 401, {"message": "Unauthorized"})
        with pytest.raises(AuthorizationError) as exc:
            sessions.login("EMP01", "SGI045", location)
        assert exc.value.message.startswith("Kode karyawan atau site tidak valid")

    def test_site_mismatch(self, sessions, location, http):
        http.set("login", 400, {"message": "Invalid location for this site"})
        with pytest.raises(RequestError) as exc:
            sessions.login("EMP01", "SGI045", location)
        assert exc.value.message.startswith("Lokasi tidak sesuai")

    def test_server_error(self, sessions, location, http):
        http.set("login", 503, {})
        with pytest.raises(ServerError) as exc:
            sessions.login("EMP01", "SGI045", location)
        assert "kesalahan pada server" in exc.value.message

    def test_too_far_message_carries_distance(self, sessions, location, http):
        http.set("login", 400, {"message": "User location is too far from site SGI045 (12,5 km)"})
        with pytest.raises(RequestError) as exc:
            sessions.login("EMP01", "SGI045", location)
        assert "12.5 km" in exc.value.message

    def test_too_far_inside_success_status(self, sessions, location, http):
        http.set("login", 200, {"Message": "Jarak anda 850 m dari cabang"})
        with pytest.raises(BusinessRuleError) as exc:
            sessions.login("EMP01", "SGI045", location)
        assert "850 m" in exc.value.message

    def test_too_far_without_distance_falls_back(self, sessions, location, http):
        http.set("login", 400, {"message": "Position too far from plant"})
        with pytest.raises(RequestError) as exc:
            sessions.login("EMP01", "SGI045", location)
        assert exc.value.message == "Lokasi Anda terlalu jauh dari site yang dipilih."


class TestSessionLifetime:
    def test_expired_session_is_not_authenticated(self, sessions, logged_in, clock):
        clock.advance(hours=8, minutes=30)
        assert not sessions.is_authenticated()
        assert sessions.get_session_info().is_valid is False

    def test_monitor_logs_out_at_expiry(self, sessions, logged_in, clock, store):
        clock.advance(hours=8, minutes=29)
        sessions.check_session()
        assert sessions.current_user is not None
        clock.advance(minutes=1)
        sessions.check_session()
        assert sessions.current_user is None
        assert store.get_item(keys.AUTH_USER) is None
        assert sessions.notifier.current.type == "expired"

    def test_monitor_warns_near_expiry(self, sessions, logged_in, clock):
        clock.advance(hours=8, minutes=22)
        sessions.check_session()
        assert sessions.notifier.current.type == "warning"
        assert sessions.notifier.current.minutes_remaining == 8

    def test_activity_far_from_expiry_only_bumps_last_activity(self, sessions, logged_in, clock):
        expiry = logged_in.session_expiry_time
        clock.advance(hours=2)
        assert sessions.update_last_activity() is False
        assert sessions.current_user.session_expiry_time == expiry
        assert sessions.current_user.last_activity_time == clock()

    def test_activity_within_last_hour_extends(self, sessions, logged_in, clock):
        clock.advance(hours=7, minutes=30)
        assert sessions.update_last_activity() is True
        assert sessions.current_user.session_expiry_time == clock() + timedelta(hours=8.5)
        assert sessions.notifier.current.type == "info"

    def test_activity_is_throttled(self, sessions, logged_in, clock):
        assert sessions.record_activity() is True
        clock.advance(minutes=4)
        assert sessions.record_activity() is False
        clock.advance(minutes=2)
        assert sessions.record_activity() is True

    def test_session_info(self, sessions, logged_in, clock):
        clock.advance(hours=8, minutes=0, seconds=30)
        info = sessions.get_session_info()
        assert info.is_valid and info.minutes_remaining == 30
        assert info.last_activity == logged_in.last_activity_time

    def test_manual_extension(self, sessions, logged_in, clock):
        clock.advance(hours=3)
        assert sessions.extend_session()
        assert sessions.current_user.session_expiry_time == clock() + timedelta(hours=8.5)

    def test_require_session_after_expiry(self, sessions, logged_in, clock):
        clock.advance(hours=9)
        with pytest.raises(SessionExpired):
            sessions.require_session()
        assert sessions.current_user is None


class TestLogout:
    def test_logout_clears_everything(self, sessions, logged_in, store, envs):
        envs.set_environment("pilot")
        store.set_item(keys.TRUCK_BARCODE, "SGI045-00149601")
        events = []
        sessions.listeners.subscribe(lambda *a: events.append(a))
        assert sessions.logout() == "/login"
        assert store.keys() == [keys.SELECTED_ENVIRONMENT]
        assert envs.current.name == "live"
        assert events == [("logout", "/login")]

    def test_next_login_starts_on_live(self, sessions, logged_in, envs, location, http):
        envs.set_environment("test")
        sessions.logout()
        envs.set_environment("pilot")
        sessions.login("EMP01", "SGI045", location)
        assert http.called("login")[-1]["json"]["env"] == "live"
        assert envs.current.name == "live"


class TestRestore:
    def test_valid_record_is_restored_unchanged(self, store, envs, proxy, clock, logged_in):
        again = SessionManager(store, envs, proxy, clock=clock, monitor=False)
        assert again.is_authenticated()
        assert again.current_user.session_expiry_time == logged_in.session_expiry_time

    def test_expired_record_logs_out(self, store, envs, proxy, clock, logged_in):
        clock.advance(hours=9)
        again = SessionManager(store, envs, proxy, clock=clock, monitor=False)
        assert again.current_user is None
        assert store.get_item(keys.AUTH_USER) is None

    def test_legacy_record_without_expiry(self, store, envs, proxy, clock):
        login_time = clock() - timedelta(hours=1)
        store.set_json(keys.AUTH_USER, {"username": "EMP01", "empCode": "EMP01", "site": "SGI045", "role": "driver",
                                        "loginTime": login_time.isoformat()})
        restored = SessionManager(store, envs, proxy, clock=clock, monitor=False)
        assert restored.current_user.session_expiry_time == login_time + timedelta(hours=8.5)

    def test_corrupt_record_logs_out(self, store, envs, proxy, clock):
        store.set_item(keys.AUTH_USER, "{not json")
        restored = SessionManager(store, envs, proxy, clock=clock, monitor=False)
        assert restored.current_user is None
        assert store.get_item(keys.AUTH_USER) is None


class TestRolesAndLocation:
    def test_role_checks(self, sessions, logged_in):
        assert sessions.has_role("driver") and not sessions.has_role("admin")
        assert sessions.has_any_role(["admin", "driver"]) and not sessions.has_any_role(["supervisor"])

    def test_role_checks_without_session(self, sessions):
        assert not sessions.has_role("driver") and not sessions.has_any_role(["driver"])

    def test_revalidate_location_is_persisted(self, sessions, logged_in, store):
        provider = GeolocationProvider(lambda: (-7.0, 110.5, 8.0))
        loc = sessions.revalidate_location(provider)
        assert sessions.current_user.location.latitude == -7.0
        assert json.loads(store.get_item(keys.AUTH_USER))["location"]["latitude"] == loc.latitude


class TestToken:
    def test_expired_token_logs_out(self, sessions, logged_in):
        sessions.current_user.bearer_token = make_token(seconds=-10)
        sessions.check_token()
        assert sessions.current_user is None

    def test_valid_token_is_kept(self, sessions, logged_in):
        sessions.check_token()
        assert sessions.current_user is not None

    def test_require_token_rejects_missing_token(self, sessions, logged_in):
        sessions.current_user.bearer_token = None
        with pytest.raises(SessionExpired):
            sessions.require_token()


class TestForceLogin:
    def test_secret_verification(self):
        hashed = make_hash("gate-operator")
        assert verify_force_secret("gate-operator", hashed)
        assert not verify_force_secret("wrong", hashed)
        assert not verify_force_secret("gate-operator", "")
        assert not verify_force_secret("gate-operator", "not-a-hash")

    def test_force_login_skips_logon_call(self, sessions, http, envs):
        envs.set_environment("pilot")
        user = sessions.force_login("sgi053")
        assert user.site == "SGI053" and user.role == "admin"
        assert http.called("login") == []
        assert sessions.is_authenticated() and envs.current.name == "live"


class TestMonitors:
    def test_login_starts_and_logout_stops_timers(self, store, envs, proxy, clock, location):
        manager = SessionManager(store, envs, proxy, clock=clock, monitor=True)
        manager.login("EMP01", "SGI045", location)
        assert manager.monitoring
        manager.logout()
        assert not manager.monitoring

    def test_interval_timer_fires_until_cancelled(self):
        fired = threading.Event()
        timer = IntervalTimer(0.01, fired.set, "test-timer")
        timer.start()
        assert fired.wait(2)
        timer.cancel()
        assert not timer.running
