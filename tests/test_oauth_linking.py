import pytest

from appauth.service.auth import LinkOutcome
from appauth.service.errors import ValidationError
from appauth.service.oauth import OAuthClient, OAuthIdentity

TODO = "http://localhost:3000"
CUSTOMER = "http://localhost:5173"


def _google(provider_id="g-1", email="alice@x.com", verified=True):
    return OAuthIdentity("google", provider_id, email, "Alice", verified)


class TestLinkOAuthAccount:
    """Provider identity binding by provider id first, then email."""

    def test_new_identity_creates_account(self, auth_service):
        result = auth_service.link_oauth_account(_google(), TODO)
        assert result.outcome == LinkOutcome.CREATED
        user = result.user
        assert user.provider_ids == {"google": "g-1"}
        assert user.oauth_provider == "google"
        assert user.email_verified
        registration = user.registration_for("todo-app")
        assert registration.auth_method == "google-oauth"
        assert registration.password is None
        assert registration.roles == ["user"]

    def test_provider_id_lookup_wins_over_email(self, auth_service):
        created = auth_service.link_oauth_account(_google(), TODO)
        again = auth_service.link_oauth_account(_google(email="renamed@x.com"), TODO)
        assert again.outcome == LinkOutcome.LINKED
        assert again.user.id == created.user.id
        assert not again.registration_added

    async def test_email_match_links_and_adds_registration(self, auth_service):
        registered = await auth_service.register("alice@x.com", "pw123456", TODO)
        result = auth_service.link_oauth_account(_google(), CUSTOMER)
        assert result.outcome == LinkOutcome.LINKED
        assert result.registration_added
        assert result.user.id == registered.user["id"]
        assert result.user.provider_ids["google"] == "g-1"
        assert result.user.registration_for("sera-food-customer-app").auth_method == "google-oauth"
        # Password registration untouched
        assert result.user.registration_for("todo-app").auth_method == "email-password"

    async def test_existing_password_registration_rejects(self, auth_service, memory_store):
        await auth_service.register("alice@x.com", "pw123456", TODO)
        result = auth_service.link_oauth_account(_google(), TODO)
        assert result.outcome == LinkOutcome.REJECTED
        assert result.reason.error_code == "wrong_auth_method"
        assert result.reason.detail["auth_method"] == "email-password"
        # No duplicate identity, no link recorded
        assert len(memory_store.list_users()) == 1
        assert memory_store.get_user_by_provider("google", "g-1") is None

    async def test_unverified_email_does_not_link(self, auth_service):
        await auth_service.register("alice@x.com", "pw123456", TODO)
        result = auth_service.link_oauth_account(_google(verified=False), CUSTOMER)
        assert not result.ok
        assert result.reason.error_code == "unverified_provider_email"

    def test_missing_email_rejected_for_new_account(self, auth_service):
        result = auth_service.link_oauth_account(_google(email=None), TODO)
        assert not result.ok

    def test_invalid_endpoint_rejected(self, auth_service):
        result = auth_service.link_oauth_account(_google(), "https://unknown.example")
        assert not result.ok

    def test_deactivated_account_rejected(self, auth_service):
        created = auth_service.link_oauth_account(_google(), TODO)
        user = created.user
        auth_service.credentials.set_account_active(user, False)
        auth_service.credentials.save(user)
        result = auth_service.link_oauth_account(_google(), TODO)
        assert result.reason.error_code == "account_deactivated"


class TestOAuthRoundTrip:
    """State carries the app endpoint through the provider redirect."""

    async def test_start_and_complete(self, auth_service):
        start = await auth_service.start_oauth("google", CUSTOMER)
        assert start["authorization_url"].startswith("https://accounts.google.com/")
        assert "state=" + start["state"] in start["authorization_url"]
        assert "%2Fv1%2Fauth%2Foauth%2Fgoogle%2Fcallback" in start["authorization_url"]

        auth_service.register_oauth_code(
            "google",
            "code-1",
            {"provider_id": "g-1", "email": "alice@x.com", "email_verified": True},
        )
        completion = await auth_service.complete_oauth("google", "code-1", start["state"])
        assert completion.app_endpoint == CUSTOMER
        assert completion.link.outcome == LinkOutcome.CREATED
        assert completion.auth.app_identifier == "sera-food-customer-app"
        assert completion.auth.tokens.refresh_token

    async def test_state_is_single_use(self, auth_service):
        start = await auth_service.start_oauth("google", TODO)
        auth_service.register_oauth_code("google", "c1", {"provider_id": "g-1", "email": "a@x.com"})
        await auth_service.complete_oauth("google", "c1", start["state"])
        auth_service.register_oauth_code("google", "c2", {"provider_id": "g-1", "email": "a@x.com"})
        replay = await auth_service.complete_oauth("google", "c2", start["state"])
        assert replay.auth is None
        assert replay.link.reason.error_code == "invalid_oauth_state"

    async def test_state_bound_to_provider(self, auth_service):
        start = await auth_service.start_oauth("google", TODO)
        completion = await auth_service.complete_oauth("github", "code", start["state"])
        assert completion.link.reason.error_code == "invalid_oauth_state"

    async def test_failed_exchange(self, auth_service):
        start = await auth_service.start_oauth("github", TODO)
        auth_service.register_oauth_code("github", "bad", {"email": "noid@x.com"})
        completion = await auth_service.complete_oauth("github", "bad", start["state"])
        assert completion.link.reason.error_code == "oauth_exchange_failed"
        assert completion.app_endpoint == TODO

    async def test_unconfigured_provider(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.start_oauth("facebook", TODO)

    async def test_unsupported_provider(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.start_oauth("myspace", TODO)


class TestParseUserinfo:
    def test_google(self):
        payload = OAuthClient.parse_userinfo(
            "google", {"id": "1", "email": "a@x.com", "name": "A", "verified_email": True}
        )
        assert payload == {
            "provider_id": "1",
            "email": "a@x.com",
            "display_name": "A",
            "email_verified": True,
        }

    def test_github_uses_login_as_name(self):
        payload = OAuthClient.parse_userinfo("github", {"id": 42, "login": "octo", "email": None})
        assert payload["provider_id"] == "42"
        assert payload["display_name"] == "octo"
        assert payload["email_verified"] is False
