import re

# keywords the ERP uses when the logon site does not match the device position
LOCATION_WORDS = ("location", "coordinate", "site", "tidak sesuai", "invalid location", "position",
                  "latitude", "longitude", "lokasi", "cabang")
TOO_FAR_WORDS = ("too far", "terlalu jauh", "distance", "jarak")
DISTANCE_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(km|m)\b", re.IGNORECASE)


class GateError(Exception):
    category = "error"
    status_code = 400

    def __init__(self, message: str, title: str = "", status: int = None, payload=None):
        super().__init__(message)
        self.message = message; self.title = title or self.default_title
        self.status = status; self.payload = payload

    default_title = "Terjadi Kesalahan"

    def to_dict(self):
        return {"category": self.category, "title": self.title, "message": self.message}


class ValidationError(GateError):
    category = "validation"; default_title = "Data Tidak Valid"


class OdometerWarning(ValidationError):
    """Raised once when the entered odometer is below the reference; a resubmit overrides it."""
    category = "warning"; status_code = 409; default_title = "Periksa Odometer"


class ConnectivityError(GateError):
    category = "connectivity"; status_code = 503; default_title = "Koneksi Bermasalah"


class AuthorizationError(GateError):
    category = "auth"; status_code = 401; default_title = "Autentikasi Gagal"


class SessionExpired(AuthorizationError):
    default_title = "Sesi Berakhir"


class BusinessRuleError(GateError):
    category = "business"; status_code = 422; default_title = "Ditolak Sistem"


class ServerError(GateError):
    category = "server"; status_code = 502; default_title = "Kesalahan Server"


class RequestError(GateError):
    category = "request"; default_title = "Permintaan Ditolak"


def error_for_status(status: int, message: str, payload=None) -> GateError:
    if status == 0: cls = ConnectivityError
    elif status in (401, 403): cls = AuthorizationError
    elif status >= 500: cls = ServerError
    else: cls = RequestError
    return cls(message, status=status, payload=payload)


def upstream_message(payload) -> str:
    if isinstance(payload, str): return payload
    if isinstance(payload, dict):
        for k in ("message", "Message", "error", "Error", "ErrorMessage"):
            v = payload.get(k)
            if isinstance(v, str) and v: return v
    return ""


def mentions(text: str, words) -> bool:
    low = (text or "").lower()
    return any(w in low for w in words)


def too_far_message(upstream: str) -> str:
    m = DISTANCE_RE.search(upstream or "")
    if not m: return "Lokasi Anda terlalu jauh dari site yang dipilih."
    value = m.group(1).replace(",", "."); unit = m.group(2).lower()
    return f"Lokasi Anda berjarak {value} {unit} dari site yang dipilih. Mendekatlah ke area site lalu coba lagi."


def describe_login_error(status: int, payload=None) -> str:
    msg = upstream_message(payload)
    if status == 0: return "Tidak dapat terhubung ke server. Periksa koneksi internet Anda."
    if mentions(msg, TOO_FAR_WORDS): return too_far_message(msg)
    if status in (400, 422) or mentions(msg, LOCATION_WORDS):
        return "Lokasi tidak sesuai dengan site yang dipilih. Pastikan Anda berada di area yang sesuai dengan site."
    if status == 401: return "Kode karyawan atau site tidak valid. Periksa kembali data Anda."
    if status == 403: return "Akses ditolak. Anda tidak memiliki izin untuk menggunakan aplikasi ini."
    if status >= 500: return "Terjadi kesalahan pada server. Silakan coba lagi nanti."
    return msg or "Login gagal. Silakan coba lagi."


def describe_lookup_error(status: int):
    """(title, message) for a failed trip/SPK lookup."""
    if status == 400:
        return "Nomor SPK Tidak Valid", "Nomor SPK yang dimasukkan tidak valid atau tidak ditemukan. Silakan periksa kembali barcode kendaraan."
    if status == 404:
        return "Nomor SPK Tidak Ditemukan", "Nomor SPK tidak ditemukan dalam sistem. Pastikan barcode yang Anda scan atau input sudah benar."
    if status == 0:
        return "Koneksi Bermasalah", "Tidak dapat terhubung ke server. Periksa koneksi internet Anda dan coba lagi."
    if status == 401: return "Autentikasi Gagal", "Sesi Anda telah berakhir. Silakan login kembali."
    if status == 403: return "Akses Ditolak", "Anda tidak memiliki izin untuk mengakses data ini. Hubungi administrator."
    if status >= 500: return "Kesalahan Server", "Terjadi kesalahan pada server. Silakan coba lagi dalam beberapa saat."
    return "Nomor SPK Tidak Ditemukan", "Nomor SPK tidak ditemukan atau tidak valid. Silakan periksa kembali barcode kendaraan."


SUBMIT_SUFFIX = {0: " - Periksa koneksi internet Anda.", 400: " - Data yang dikirim tidak valid (Bad Request).",
                 401: " - Authentication gagal.", 403: " - Akses ditolak.", 404: " - API endpoint tidak ditemukan.",
                 409: " - Data konflik dengan server."}


def describe_submit_error(status: int) -> str:
    base = "Gagal mengirim data ke server"
    if status in SUBMIT_SUFFIX: tail = SUBMIT_SUFFIX[status]
    elif status >= 500: tail = " - Server error."
    else: tail = f" - HTTP {status}."
    return base + tail + " Data tetap tersimpan secara lokal."


def describe_process_error(status: int) -> str:
    base = "Gagal memproses data ke sistem Epicor"
    if status == 0: base += " - Periksa koneksi internet."
    elif status == 400: base += " - Data tidak valid untuk proses Epicor."
    elif status == 401: base += " - Authentication gagal."
    elif status >= 500: base += " - Server error saat proses ke Epicor."
    else: base += f" - HTTP {status}."
    return base + " Data sudah tersimpan di staging table, tapi gagal diproses ke Epicor."
