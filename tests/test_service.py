"""Tests for the protocol flows in SimulatorService."""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest

from simulator.errors import (
    Conflict,
    InvalidGrant,
    InvalidRequest,
    NotFound,
    Unauthenticated,
    UnsupportedGrantType,
)
from simulator.stores import FlowState, IdentityStore
from tests.conftest import TEST_EMAIL, build_service


def code_from(target: str) -> str:
    return parse_qs(urlparse(target).query)["code"][0]


class TestPinToTokenFlow:
    """End-to-end pin -> code -> token flow."""

    def test_jane_doe_scenario(self, service, store):
        """Pin request, pin redemption and code exchange yield every token."""
        details = service.create_pin_details("Jane", "Doe", ["role1", "role2"])
        assert set(details) == {"pin", "userId"}

        target = service.authorize_redirect(
            "hmcts", "https://example.com/cb", "oneState", pin=details["pin"]
        )
        query = parse_qs(urlparse(target).query)
        assert query["state"] == ["oneState"]

        tokens = service.exchange_code(query["code"][0], "hmcts", "https://example.com/cb")

        assert tokens.access_token and tokens.id_token and tokens.refresh_token
        record = store.get_by_user_id(details["userId"])
        assert record.roles == ["role1", "role2"]
        assert record.state == FlowState.TOKENIZED
        assert record.pin is None

    def test_second_exchange_is_invalid_grant(self, service, john):
        """Codes are single use."""
        code = service.generate_code_for_username(TEST_EMAIL)
        service.exchange_code(code, "hmcts", None)

        with pytest.raises(InvalidGrant):
            service.exchange_code(code, "hmcts", None)

    def test_missing_code_is_invalid_request(self, service):
        with pytest.raises(InvalidRequest):
            service.exchange_code("", "hmcts", None)


class TestAuthorizeRedirect:
    """Tests for the authorization redirect flow."""

    def test_unknown_pin_creates_identity(self, service, store):
        """A redirect is still issued for a fresh identity."""
        target = service.authorize_redirect("hmcts", "https://example.com/cb", "s", pin="pinHeaderValue")

        assert target.startswith("https://example.com/cb?")
        assert store.get_by_authorization_code(code_from(target)) is not None
        assert len(store) == 1

    def test_existing_query_string_is_kept(self, service):
        target = service.authorize_redirect("hmcts", "https://example.com/cb?x=1", "s")

        assert target.startswith("https://example.com/cb?x=1&code=")

    def test_code_is_bound_to_redirect_uri(self, service, john):
        """Only the redirect URI the code was issued for can redeem it."""
        target = service.authorize_redirect("hmcts", "https://good.example/cb", "s", username=TEST_EMAIL)
        code = code_from(target)

        with pytest.raises(InvalidGrant):
            service.exchange_code(code, "evil-client", "https://evil.example/cb")
        with pytest.raises(InvalidGrant):
            service.exchange_code(code, "hmcts", None)

        assert service.exchange_code(code, "hmcts", "https://good.example/cb").access_token

    def test_username_must_exist(self, service):
        with pytest.raises(NotFound):
            service.authorize_redirect("hmcts", "https://example.com/cb", username="ghost@example.com")

    def test_redirect_uri_required(self, service):
        with pytest.raises(InvalidRequest):
            service.authorize_redirect("hmcts", "")


class TestLegacyCombinedFlow:
    """Tests for the basic-auth code flow on /oauth2/authorize."""

    def test_never_creates_records(self, signing_key):
        """Only update paths are used; put and add are never called."""
        store = MagicMock(wraps=IdentityStore())
        service = build_service(store, signing_key)
        service.create_account({"email": TEST_EMAIL, "forename": "John"})
        store.reset_mock()

        code = service.generate_code_for_username(TEST_EMAIL)

        assert code
        store.put.assert_not_called()
        store.add.assert_not_called()
        store.update.assert_called_once()

    def test_unknown_email_is_not_found(self, service, store):
        with pytest.raises(NotFound):
            service.generate_code_for_username("ghost@example.com")
        assert len(store) == 0


class TestPasswordGrant:
    """Tests for the resource-owner style grant."""

    def test_response_and_call_pattern(self, service, store):
        """One cached issuance and one token update per request."""
        service.create_account({"id": "aUserName", "email": TEST_EMAIL, "forename": "John"})

        with patch.object(service.issuer, "issue_cached_token", wraps=service.issuer.issue_cached_token) as cached, \
                patch.object(service, "update_token_in_user", wraps=service.update_token_in_user) as update:
            response = service.password_grant("aUserName", "hmcts", "grantable", "openid profile roles")

        cached.assert_called_once_with("aUserName", "hmcts", "grantable")
        update.assert_called_once_with("aUserName", response["access_token"])
        assert response["scope"] == "openid profile roles"
        assert response["token_type"] == "Bearer"
        assert isinstance(response["expires_in"], int)
        assert store.get_by_token(response["access_token"]).user_id == "aUserName"
        assert store.get_by_token(response["id_token"]).user_id == "aUserName"

    def test_repeat_requests_reuse_cached_token(self, service, john):
        """The response token is stable within its validity window."""
        first = service.password_grant(TEST_EMAIL, "hmcts", "password", "openid")
        second = service.password_grant(TEST_EMAIL, "hmcts", "password", "openid")

        assert first["access_token"] == second["access_token"]
        assert service.user_info(second["access_token"])["sub"] == TEST_EMAIL

    def test_recreated_account_gets_a_new_token(self, service, john):
        """A deleted account's cached token is not handed to a new account with its email."""
        first = service.password_grant(TEST_EMAIL, "hmcts", "password", "openid")
        service.remove_account(TEST_EMAIL)
        service.create_account({"id": "brandNewId", "email": TEST_EMAIL})

        second = service.password_grant(TEST_EMAIL, "hmcts", "password", "openid")

        assert second["access_token"] != first["access_token"]
        assert service.user_info(second["access_token"])["uid"] == "brandNewId"
        with pytest.raises(Unauthenticated):
            service.user_info(first["access_token"])

    def test_unknown_user_is_invalid_grant(self, service):
        with pytest.raises(InvalidGrant):
            service.password_grant("ghost", "hmcts", "password", "openid")

    def test_dispatch_rejects_unknown_grant(self, service):
        """No username and no known grant type is unsupported."""
        with pytest.raises(UnsupportedGrantType):
            service.token_grant("client_credentials", client_id="hmcts")


class TestLookups:
    """Tests for bearer-token lookups."""

    def test_user_info_scenario(self, service, john):
        """sub is the email and roles keep their order."""
        token = service.issuer.issue_token(TEST_EMAIL, "hmcts", "password")

        info = service.user_info(token)

        assert info == {
            "uid": "oneUserId",
            "email": TEST_EMAIL,
            "given_name": "John",
            "family_name": "Smith",
            "sub": TEST_EMAIL,
            "roles": ["role1", "role2"],
        }

    def test_details_by_token(self, service, john):
        token = service.issuer.issue_token(TEST_EMAIL, "hmcts", "password")

        assert service.user_details(token)["forename"] == "John"

    def test_missing_or_unknown_token_is_unauthenticated(self, service):
        with pytest.raises(Unauthenticated):
            service.user_info(None)
        with pytest.raises(Unauthenticated):
            service.user_details("not-a-token")

    def test_user_by_id_not_found(self, service, john):
        token = service.issuer.issue_token(TEST_EMAIL, "hmcts", "password")

        with pytest.raises(NotFound):
            service.user_by_id(token, "ghost")

    def test_logout_revokes(self, service, john):
        token = service.issuer.issue_token(TEST_EMAIL, "hmcts", "password")

        assert service.logout(token) is True
        with pytest.raises(Unauthenticated):
            service.user_info(token)


class TestAccounts:
    """Tests for test-support seeding."""

    def test_duplicate_email_conflicts(self, service, john):
        with pytest.raises(Conflict):
            service.create_account({"email": TEST_EMAIL})

    def test_role_objects_are_flattened(self, service):
        details = service.create_account({"email": "a@example.com", "roles": [{"code": "citizen"}, "judge"]})

        assert details["roles"] == ["citizen", "judge"]

    def test_seed_skips_duplicates(self, service):
        accounts = [{"email": "a@example.com"}, {"email": "a@example.com"}, {"email": "b@example.com"}]

        assert service.seed_accounts(accounts) == 2

    def test_email_required(self, service):
        with pytest.raises(InvalidRequest):
            service.create_account({"forename": "Nobody"})


class TestConcurrentCallers:
    """Flows running in parallel against one store."""

    def test_issued_token_resolves_during_concurrent_grants(self, service, store, john):
        """Repeated password grants never hide a token already handed out."""
        token = service.password_grant(TEST_EMAIL, "hmcts", "password", "openid")["access_token"]
        done = threading.Event()

        def grant_repeatedly():
            try:
                for _ in range(40):
                    service.password_grant(TEST_EMAIL, "hmcts", "password", "openid")
            finally:
                done.set()

        worker = threading.Thread(target=grant_repeatedly)
        worker.start()
        misses = 0
        while not done.is_set():
            if store.get_by_token(token) is None:
                misses += 1
        worker.join()

        assert misses == 0
        assert service.user_info(token)["uid"] == "oneUserId"

    def test_parallel_pin_flows_stay_separate(self, service):
        """Each pin flow ends with tokens for its own identity."""
        redirect_uri = "https://example.com/cb"

        def flow(i):
            details = service.create_pin_details(f"User{i}", "Doe", [f"role{i}"])
            target = service.authorize_redirect("hmcts", redirect_uri, str(i), pin=details["pin"])
            tokens = service.exchange_code(code_from(target), "hmcts", redirect_uri)
            return details["userId"], tokens

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(flow, range(24)))

        assert len({user_id for user_id, _ in results}) == 24
        for i, (user_id, tokens) in enumerate(results):
            info = service.user_info(tokens.access_token)
            assert info["uid"] == user_id
            assert info["roles"] == [f"role{i}"]
