import orjson
import pytest

from genie_sync.errors import ConfigurationError
from genie_sync.session import AuthState, build_api_headers, build_session


def _write_state(tmp_path, headers=None, group=None):
    local_storage = [{"name": "NG_TRANSLATE_LANG_KEY", "value": '"en-US"'}]
    if group is not None:
        local_storage.append({"name": "group", "value": orjson.dumps(group).decode()})
    state = {
        "cookies": [
            {"name": "sid", "value": "abc", "domain": "api2.learning-genie.com", "path": "/"},
            {"name": "", "value": "ignored"},
        ],
        "origins": [{"origin": "https://web.learning-genie.com", "localStorage": local_storage}],
        "__extraHTTPHeaders": headers or {},
    }
    path = tmp_path / "auth.json"
    path.write_bytes(orjson.dumps(state))
    return path


def test_headers_are_inferred_from_storage(tmp_path):
    path = _write_state(tmp_path, headers={"X-UID": "parent-1"}, group={"center_id": "c-9", "timezone": "-7"})

    headers = build_api_headers(AuthState.load(path))

    assert headers["x-uid"] == "parent-1"
    assert headers["x-center-id"] == "c-9"
    assert headers["x-lg-timezoneoffset"] == "-7"
    assert headers["accept-language"] == "en-US"
    assert headers["x-lg-language"] == "en-US"
    assert headers["origin"] == "https://web.learning-genie.com"


def test_saved_headers_win_over_inferred_values(tmp_path):
    path = _write_state(
        tmp_path,
        headers={"x-uid": "parent-1", "X-LG-TimezoneOffset": "-5", "x-center-id": "c-1"},
        group={"center_id": "c-9", "timezone": "-7"},
    )
    headers = build_api_headers(AuthState.load(path))
    assert headers["x-lg-timezoneoffset"] == "-5"
    assert headers["x-center-id"] == "c-1"


def test_missing_center_is_sent_as_null(tmp_path):
    path = _write_state(tmp_path, headers={"x-uid": "parent-1"})
    assert build_api_headers(AuthState.load(path))["x-center-id"] == "null"


def test_uid_can_come_from_configuration(tmp_path):
    path = _write_state(tmp_path)
    state = AuthState.load(path)

    with pytest.raises(ConfigurationError):
        build_api_headers(state)

    assert build_api_headers(state, uid=" parent-2 ")["x-uid"] == "parent-2"
    assert "x-uid" not in build_api_headers(state, allow_missing_uid=True)


def test_missing_auth_state(tmp_path):
    with pytest.raises(ConfigurationError):
        AuthState.load(tmp_path / "missing.json")


def test_unreadable_auth_state(tmp_path):
    path = tmp_path / "auth.json"
    path.write_text("[]")
    with pytest.raises(ConfigurationError):
        AuthState.load(path)


def test_session_carries_headers_and_cookies(tmp_path):
    path = _write_state(tmp_path, headers={"x-uid": "parent-1"})
    state = AuthState.load(path)
    session = build_session(state, build_api_headers(state))

    assert session.headers["x-uid"] == "parent-1"
    assert session.cookies.get("sid") == "abc"
    assert len(session.cookies) == 1
