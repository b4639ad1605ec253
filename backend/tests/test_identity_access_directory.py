"""
Identity directory adapters.

We test the pure helpers for display-name humanization and the Keycloak
adapter with `requests` patched (no network):
- attributes.display_name
- firstName + lastName
- email/username heuristic (prefix before '@', split on [._-], title case)
- fallback "Unknown"
"""
from __future__ import annotations

import types

import pytest

from identity_access import directory
from identity_access.domain import Identity


def test_display_name_prefers_attribute_then_first_last():
    u = {"firstName": "Max", "lastName": "Mustermann", "attributes": {"display_name": ["Franz Müller"]}}
    assert directory._display_name(u) == "Franz Müller"

    u2 = {"firstName": "Max", "lastName": "Mustermann"}
    assert directory._display_name(u2) == "Max Mustermann"


def test_display_name_humanizes_email_and_legacy_prefix():
    u = {"email": "raphael.fournell@gym.example.de"}
    assert directory._display_name(u) == "Raphael Fournell"

    u2 = {"username": "legacy-email:max.tolle"}
    assert directory._display_name(u2) == "Max Tolle"


def test_display_name_handles_single_word_and_fallback():
    assert directory._display_name({"username": "emilia"}) == "Emilia"
    assert directory._display_name({}) == "Unknown"


def test_in_memory_directory_lookup_and_order():
    d = directory.InMemoryDirectory(
        [Identity(id="b", display_name="Zora"), Identity(id="a", display_name="anna")]
    )
    assert [i.id for i in d.list_identities()] == ["a", "b"]
    assert d.get_identity("b").display_name == "Zora"
    with pytest.raises(LookupError):
        d.get_identity("missing")


def test_resolve_names_skips_unknown_ids():
    d = directory.InMemoryDirectory([Identity(id="S1", display_name="Sara Super")])
    out = directory.resolve_names(d, ["S1", "ghost", "", "S1"])
    assert list(out) == ["S1"]


def test_resolve_names_propagates_outages():
    class _Down:
        def get_identity(self, identity_id):
            raise RuntimeError("directory unavailable")

    with pytest.raises(RuntimeError):
        directory.resolve_names(_Down(), ["x"])


def test_build_directory_selects_adapter():
    assert isinstance(directory.build_directory("memory"), directory.InMemoryDirectory)
    assert isinstance(directory.build_directory("keycloak"), directory.KeycloakDirectory)
    with pytest.raises(ValueError):
        directory.build_directory("ldap")


# --- Keycloak -------------------------------------------------------------------


def _kc_token_stub(self) -> str:  # type: ignore[override]
    return "dummy-token"


class _Resp:
    def __init__(self, status: int, data):
        self.status_code = status
        self._data = data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise RuntimeError(f"HTTP {self.status_code}")

    def json(self):
        return self._data


def _mk_user(idx: int, **extra):
    u = {"id": f"sub-{idx:04d}", "username": f"user{idx:04d}", "attributes": {}}
    u.update(extra)
    return u


def test_keycloak_lists_all_pages(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(directory._KC, "token", _kc_token_stub)
    monkeypatch.delenv("KC_REALM", raising=False)
    seen_firsts: list[int] = []

    def fake_get(url, headers=None, params=None, timeout=None, verify=None):
        assert url.endswith("/admin/realms/campus/users")
        assert headers["Authorization"] == "Bearer dummy-token"
        first = int(params["first"])
        seen_firsts.append(first)
        if first == 0:
            return _Resp(200, [_mk_user(i) for i in range(2)])
        if first == 2:
            return _Resp(200, [_mk_user(2, firstName="Zelda", lastName="Zed"), {"username": "no-id"}])
        return _Resp(200, [])

    monkeypatch.setattr(directory, "requests", types.SimpleNamespace(get=fake_get))
    out = directory.KeycloakDirectory(page_size=2).list_identities()
    assert seen_firsts == [0, 2, 4]
    assert [i.id for i in out] == ["sub-0000", "sub-0001", "sub-0002"]
    assert out[-1].display_name == "Zelda Zed"


def test_keycloak_get_identity_404_is_lookup_error(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(directory._KC, "token", _kc_token_stub)

    def fake_get(url, headers=None, timeout=None, verify=None):
        if url.endswith("/users/known"):
            return _Resp(200, {"id": "known", "email": "kim.k@example.org"})
        return _Resp(404, {})

    monkeypatch.setattr(directory, "requests", types.SimpleNamespace(get=fake_get))
    kc = directory.KeycloakDirectory()
    ident = kc.get_identity("known")
    assert ident == Identity(id="known", display_name="Kim K", email="kim.k@example.org")
    with pytest.raises(LookupError):
        kc.get_identity("unknown")


def test_keycloak_token_requires_client_secret(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("KC_ADMIN_CLIENT_SECRET", raising=False)
    with pytest.raises(RuntimeError):
        directory._KC().token()


def test_keycloak_transport_error_is_directory_unavailable(monkeypatch: pytest.MonkeyPatch):
    import requests

    monkeypatch.setattr(directory._KC, "token", _kc_token_stub)

    def fake_get(url, headers=None, params=None, timeout=None, verify=None):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(directory, "requests", types.SimpleNamespace(get=fake_get))
    kc = directory.KeycloakDirectory()
    with pytest.raises(directory.DirectoryUnavailable):
        kc.get_identity("known")
    with pytest.raises(directory.DirectoryUnavailable):
        kc.list_identities()


def test_keycloak_get_identity_quotes_id_and_rejects_non_object_body(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(directory._KC, "token", _kc_token_stub)
    monkeypatch.delenv("KC_REALM", raising=False)
    seen: list[str] = []

    def fake_get(url, headers=None, timeout=None, verify=None):
        seen.append(url)
        return _Resp(200, [{"id": "someone-else"}])

    monkeypatch.setattr(directory, "requests", types.SimpleNamespace(get=fake_get))
    with pytest.raises(LookupError):
        directory.KeycloakDirectory().get_identity("../users?search=a")
    assert seen[0].endswith("/admin/realms/campus/users/..%2Fusers%3Fsearch%3Da")


class _FakePgError(Exception):
    pass


def test_profiles_driver_error_is_directory_unavailable(monkeypatch: pytest.MonkeyPatch):
    def fake_connect(dsn, connect_timeout=None):
        raise _FakePgError("could not connect to server")

    monkeypatch.setattr(directory, "HAVE_PSYCOPG", True, raising=False)
    monkeypatch.setattr(
        directory, "psycopg", types.SimpleNamespace(connect=fake_connect, Error=_FakePgError), raising=False
    )
    profiles = directory.ProfilesDirectory(dsn="fake://dsn")
    with pytest.raises(directory.DirectoryUnavailable):
        profiles.get_identity("U1")
    with pytest.raises(directory.DirectoryUnavailable):
        profiles.list_identities()
