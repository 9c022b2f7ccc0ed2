"""Auth service flows against the memory store.

Tests for:
- Registration with and without verification
- Login enumeration resistance and account state checks
- Refresh rotation, reuse and revocation
- Profile updates
- Password change and reset
"""

import pytest

from conftest import FakeClock, last_code, make_settings
from petconsult.service.auth import INVALID_CREDENTIALS, INVALID_REFRESH_TOKEN, AuthService
from petconsult.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from petconsult.service.ledger import RefreshTokenLedger, hash_token
from petconsult.service.passwords import PasswordService
from petconsult.service.sms import LoggingSmsNotifier, SmsDeliveryError
from petconsult.service.tokens import PRINCIPAL_ADMIN, TokenIssuer
from petconsult.service.verification import VerificationCodeService
from petconsult.storage.memory import MemoryStore
from petconsult.storage.models import NewPet

MOBILE = "09121234567"
PASSWORD = "secret123"


class FailingNotifier(LoggingSmsNotifier):
    async def send(self, mobile: str, message: str) -> None:
        raise SmsDeliveryError("gateway down")


def build_service(settings=None, *, notifier=None, clock=None):
    settings = settings or make_settings()
    clock = clock or FakeClock()
    store = MemoryStore()
    notifier = notifier or LoggingSmsNotifier()
    issuer = TokenIssuer(settings, clock=clock)
    ledger = RefreshTokenLedger(store, clock=clock)
    verification = VerificationCodeService(store, notifier, settings, clock=clock)
    service = AuthService(
        store, issuer, ledger, verification, PasswordService(settings), settings
    )
    return service, store, notifier


@pytest.fixture
def auth():
    return build_service()


async def register_verified(service, notifier, mobile=MOBILE, password=PASSWORD):
    await service.register(mobile, password, "Sara", "Ahmadi")
    return await service.verify_registration(mobile, last_code(notifier, mobile))


class TestRegister:
    async def test_verification_first_registration(self, auth):
        service, store, notifier = auth
        result = await service.register(MOBILE, PASSWORD, "Sara", "Ahmadi")

        assert result.verification_required is True
        assert result.tokens is None
        assert result.user.is_verified is False
        assert store.get_user_by_mobile(MOBILE).password_hash != PASSWORD
        assert notifier.outbox and notifier.outbox[-1][0] == MOBILE

    async def test_immediate_tokens_when_verification_disabled(self):
        service, store, _ = build_service(
            make_settings(registration_requires_verification=False)
        )
        result = await service.register(MOBILE, PASSWORD, "Sara", "Ahmadi")

        assert result.verification_required is False
        assert result.user.is_verified is True
        assert store.get_refresh_token(hash_token(result.tokens.refresh_token))

    async def test_registration_with_pet(self, auth):
        service, store, _ = auth
        pet = NewPet(name="Milo", species="cat", age=3)
        result = await service.register(MOBILE, PASSWORD, "Sara", "Ahmadi", pet=pet)

        assert result.pet.name == "Milo"
        assert result.pet.user_id == result.user.id
        assert store.count_user_pets(result.user.id) == 1

    async def test_duplicate_mobile_conflicts(self, auth):
        service, _, _ = auth
        await service.register(MOBILE, PASSWORD, "Sara", "Ahmadi")

        with pytest.raises(ConflictError):
            await service.register(MOBILE, "other123", "Ali", "Karimi")

    async def test_sms_failure_rolls_back_account(self):
        service, store, _ = build_service(notifier=FailingNotifier())
        pet = NewPet(name="Milo", species="cat")

        with pytest.raises(ServerError):
            await service.register(MOBILE, PASSWORD, "Sara", "Ahmadi", pet=pet)
        assert store.get_user_by_mobile(MOBILE) is None
        assert store.get_verification_code(MOBILE, "REGISTRATION") is None


class TestVerifyRegistration:
    async def test_verification_issues_session(self, auth):
        service, store, notifier = auth
        result = await register_verified(service, notifier)

        assert result.user.is_verified is True
        assert result.user.last_login_at is not None
        assert store.get_refresh_token(hash_token(result.tokens.refresh_token))

    async def test_unknown_mobile_not_found(self, auth):
        service, _, _ = auth
        with pytest.raises(NotFoundError):
            await service.verify_registration(MOBILE, "123456")

    async def test_resend_for_verified_account_conflicts(self, auth):
        service, _, notifier = auth
        await register_verified(service, notifier)

        with pytest.raises(ConflictError):
            await service.resend_verification_code(MOBILE)

    async def test_resend_replaces_code(self, auth):
        service, store, notifier = auth
        await service.register(MOBILE, PASSWORD, "Sara", "Ahmadi")
        await service.resend_verification_code(MOBILE)

        assert store.get_verification_code(MOBILE, "REGISTRATION").code == last_code(
            notifier, MOBILE
        )


class TestLogin:
    async def test_unknown_and_wrong_password_look_identical(self, auth):
        service, _, notifier = auth
        await register_verified(service, notifier)

        with pytest.raises(AuthenticationError) as unknown:
            await service.login("09120000000", PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await service.login(MOBILE, "wrongpass1")

        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_successful_login_persists_refresh_token(self, auth):
        service, store, notifier = auth
        await register_verified(service, notifier)
        result = await service.login(MOBILE, PASSWORD)

        record = store.get_refresh_token(hash_token(result.tokens.refresh_token))
        assert record.user_id == result.user.id
        assert result.user.last_login_at is not None

    async def test_deactivated_account_rejected(self, auth):
        service, store, notifier = auth
        result = await register_verified(service, notifier)
        store.set_user_active(result.user.id, False, now=service.issuer.now())

        with pytest.raises(AuthenticationError, match="deactivated"):
            await service.login(MOBILE, PASSWORD)

    async def test_unverified_login_allowed_by_default(self, auth):
        service, _, _ = auth
        await service.register(MOBILE, PASSWORD, "Sara", "Ahmadi")

        result = await service.login(MOBILE, PASSWORD)
        assert result.tokens is not None

    async def test_unverified_login_blocked_when_required(self):
        service, _, _ = build_service(make_settings(login_requires_verification=True))
        await service.register(MOBILE, PASSWORD, "Sara", "Ahmadi")

        with pytest.raises(AuthenticationError, match="not verified"):
            await service.login(MOBILE, PASSWORD)


class TestRefresh:
    async def test_rotation_replaces_token(self, auth):
        service, _, notifier = auth
        session = await register_verified(service, notifier)
        rotated = await service.refresh(session.tokens.refresh_token)

        assert rotated.tokens.refresh_token != session.tokens.refresh_token
        assert service.ledger.find_active(session.tokens.refresh_token) is None
        assert service.ledger.find_active(rotated.tokens.refresh_token)

    async def test_replayed_refresh_token_rejected(self, auth):
        service, _, notifier = auth
        session = await register_verified(service, notifier)
        await service.refresh(session.tokens.refresh_token)

        with pytest.raises(AuthenticationError) as excinfo:
            await service.refresh(session.tokens.refresh_token)
        assert excinfo.value.message == INVALID_REFRESH_TOKEN

    async def test_access_token_cannot_refresh(self, auth):
        service, _, notifier = auth
        session = await register_verified(service, notifier)

        with pytest.raises(AuthenticationError):
            await service.refresh(session.tokens.access_token)

    async def test_signed_but_unrecorded_token_rejected(self, auth):
        service, _, notifier = auth
        session = await register_verified(service, notifier)
        orphan = service.issuer.issue_token_pair(session.user.id, MOBILE, "USER")

        with pytest.raises(AuthenticationError):
            await service.refresh(orphan.refresh_token)

    async def test_admin_principal_cannot_refresh(self, auth):
        service, store, notifier = auth
        session = await register_verified(service, notifier)
        pair = service.issuer.issue_token_pair(
            session.user.id, MOBILE, "ADMIN", principal_type=PRINCIPAL_ADMIN
        )
        service.ledger.store_token(pair.refresh_token, session.user.id, pair.refresh_expires_at)

        with pytest.raises(AuthenticationError):
            await service.refresh(pair.refresh_token)

    async def test_deactivated_user_cannot_refresh(self, auth):
        service, store, notifier = auth
        session = await register_verified(service, notifier)
        store.set_user_active(session.user.id, False, now=service.issuer.now())

        with pytest.raises(AuthenticationError):
            await service.refresh(session.tokens.refresh_token)


class TestLogout:
    async def test_logout_revokes_only_given_token(self, auth):
        service, _, notifier = auth
        first = await register_verified(service, notifier)
        second = await service.login(MOBILE, PASSWORD)

        assert service.logout(first.user.id, first.tokens.refresh_token) is True
        assert service.ledger.find_active(first.tokens.refresh_token) is None
        assert service.ledger.find_active(second.tokens.refresh_token)

    async def test_logout_without_token_is_noop(self, auth):
        service, _, notifier = auth
        session = await register_verified(service, notifier)

        assert service.logout(session.user.id, None) is False
        assert service.logout(session.user.id, session.tokens.refresh_token) is True
        assert service.logout(session.user.id, session.tokens.refresh_token) is False

    async def test_logout_cannot_revoke_foreign_token(self, auth):
        service, _, notifier = auth
        victim = await register_verified(service, notifier)
        attacker = await register_verified(service, notifier, mobile="09127654321")

        assert service.logout(attacker.user.id, victim.tokens.refresh_token) is False
        assert service.ledger.find_active(victim.tokens.refresh_token)

    async def test_logout_all_revokes_every_session(self, auth):
        service, _, notifier = auth
        session = await register_verified(service, notifier)
        await service.login(MOBILE, PASSWORD)

        assert service.logout_all(session.user.id) == 2
        with pytest.raises(AuthenticationError):
            await service.refresh(session.tokens.refresh_token)

    async def test_logout_all_leaves_other_users_sessions(self, auth):
        service, _, notifier = auth
        first = await register_verified(service, notifier)
        second = await register_verified(service, notifier, mobile="09127654321")

        assert service.logout_all(first.user.id) == 1
        refreshed = await service.refresh(second.tokens.refresh_token)
        assert refreshed.user.id == second.user.id
        assert refreshed.tokens.refresh_token != second.tokens.refresh_token


class TestProfile:
    async def test_update_profile_changes_names_only(self, auth):
        service, store, notifier = auth
        session = await register_verified(service, notifier)

        updated = service.update_profile(session.user.id, "Mina", "Rahimi")

        assert (updated.first_name, updated.last_name) == ("Mina", "Rahimi")
        assert updated.mobile == MOBILE
        assert store.get_user(session.user.id).first_name == "Mina"

    def test_update_profile_unknown_user(self, auth):
        service, _, _ = auth
        with pytest.raises(NotFoundError):
            service.update_profile("missing", "Mina", "Rahimi")


class TestPasswords:
    async def test_change_password_revokes_sessions(self, auth):
        service, _, notifier = auth
        session = await register_verified(service, notifier)

        revoked = await service.change_password(session.user.id, PASSWORD, "newpass456")
        assert revoked == 1
        with pytest.raises(AuthenticationError):
            await service.login(MOBILE, PASSWORD)
        assert (await service.login(MOBILE, "newpass456")).tokens

    async def test_change_password_checks_current(self, auth):
        service, _, notifier = auth
        session = await register_verified(service, notifier)

        with pytest.raises(ValidationError):
            await service.change_password(session.user.id, "wrongpass1", "newpass456")

    async def test_change_password_rejects_same_password(self, auth):
        service, _, notifier = auth
        session = await register_verified(service, notifier)

        with pytest.raises(ValidationError):
            await service.change_password(session.user.id, PASSWORD, PASSWORD)

    async def test_reset_password_flow(self, auth):
        service, _, notifier = auth
        session = await register_verified(service, notifier)
        await service.forgot_password(MOBILE)

        revoked = await service.reset_password(
            MOBILE, last_code(notifier, MOBILE), "fresh789x"
        )
        assert revoked == 1
        assert service.ledger.find_active(session.tokens.refresh_token) is None
        assert (await service.login(MOBILE, "fresh789x")).tokens

    async def test_forgot_password_unknown_mobile(self, auth):
        service, _, _ = auth
        with pytest.raises(NotFoundError):
            await service.forgot_password(MOBILE)

    async def test_forgot_password_tolerates_sms_failure(self):
        service, store, _ = build_service(notifier=FailingNotifier())
        store.create_user(MOBILE, "hash", "Sara", "Ahmadi", is_verified=True)

        await service.forgot_password(MOBILE)
        assert store.get_verification_code(MOBILE, "PASSWORD_RESET") is not None

    async def test_reset_rejects_registration_code(self, auth):
        service, _, notifier = auth
        await service.register(MOBILE, PASSWORD, "Sara", "Ahmadi")
        registration_code = last_code(notifier, MOBILE)

        with pytest.raises(NotFoundError):
            await service.reset_password(MOBILE, registration_code, "fresh789x")

    async def test_me_for_deleted_user(self, auth):
        service, store, notifier = auth
        session = await register_verified(service, notifier)
        store.delete_user(session.user.id)

        with pytest.raises(NotFoundError):
            service.me(session.user.id)
