"""
LNURL-auth flow tests

Covers the login round trip a wallet and a browser drive together:
- challenge issue and LNURL encoding
- wallet callback verification and its failure reasons
- status polling, token issue and first-login bonus
- linking a wallet to an existing account
- expiry and purging of challenges
"""

from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from lnbridge import challenge_store
from lnbridge.codec import decode_lnurl
from lnbridge.tokens import decode_session_token

CHALLENGE_URL = "/api/auth/lightning/challenge"
CALLBACK_URL = "/api/auth/lightning/callback"


def _status(client, k1):
    return client.get(f"/api/auth/lightning/status/{k1}").get_json()


@pytest.fixture
def challenge(client):
    response = client.get(CHALLENGE_URL)
    assert response.status_code == 200
    return response.get_json()


class TestChallenge:
    def test_challenge_fields(self, challenge):
        assert len(challenge["k1"]) == 64
        assert challenge["secret"] == challenge["k1"]
        assert challenge["expiresIn"] == 300
        assert challenge["expiresAt"].endswith("Z")
        assert challenge["qrCode"].startswith("data:image/png;base64,")

    def test_lnurl_points_at_callback(self, challenge):
        url = urlparse(decode_lnurl(challenge["lnurl"]))
        query = parse_qs(url.query)

        assert url.path == "/api/auth/lightning/callback"
        assert query == {"tag": ["login"], "k1": [challenge["k1"]]}

    def test_every_challenge_is_fresh(self, client, challenge):
        assert client.get(CHALLENGE_URL).get_json()["k1"] != challenge["k1"]

    def test_new_challenge_is_pending(self, client, challenge):
        assert _status(client, challenge["k1"]) == {"status": "pending"}


class TestWalletLogin:
    def test_first_login_creates_user_with_bonus(self, client, challenge, wallet, app_config):
        """A new wallet signs in, gets an account, a session token and the bonus."""
        response = client.get(CALLBACK_URL, query_string=wallet.callback_params(challenge["k1"]))
        assert response.status_code == 200
        assert response.get_json() == {"status": "OK"}

        status = _status(client, challenge["k1"])
        assert status["status"] == "verified"
        assert status["isNew"] is True
        assert status["bonusAwarded"] is True
        assert status["user"]["lightningPubkey"] == wallet.pubkey
        assert status["user"]["name"] == f"Lightning_{wallet.pubkey[:8]}"
        assert status["user"]["balanceSats"] == 1

        claims = decode_session_token(status["token"], app_config)
        assert claims["sub"] == status["user"]["id"]

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {status['token']}"})
        assert me.get_json()["user"]["id"] == status["user"]["id"]

    def test_polling_again_returns_the_same_user(self, client, challenge, wallet):
        client.get(CALLBACK_URL, query_string=wallet.callback_params(challenge["k1"]))

        first = _status(client, challenge["k1"])
        second = _status(client, challenge["k1"])

        assert second["status"] == "verified"
        assert second["user"]["id"] == first["user"]["id"]
        assert second["isNew"] is False
        assert second["bonusAwarded"] is False
        assert second["user"]["balanceSats"] == 1

    def test_returning_wallet_gets_no_second_bonus(self, client, wallet):
        for _ in range(2):
            k1 = client.get(CHALLENGE_URL).get_json()["k1"]
            client.get(CALLBACK_URL, query_string=wallet.callback_params(k1))
            status = _status(client, k1)

        assert status["isNew"] is False
        assert status["bonusAwarded"] is False
        assert status["user"]["balanceSats"] == 1

    def test_replayed_callback_is_rejected(self, client, challenge, wallet):
        params = wallet.callback_params(challenge["k1"])

        assert client.get(CALLBACK_URL, query_string=params).get_json() == {"status": "OK"}
        assert client.get(CALLBACK_URL, query_string=params).get_json() == {
            "status": "ERROR",
            "reason": "Challenge already used",
        }

    def test_second_wallet_cannot_take_a_used_challenge(self, client, challenge, wallet, other_wallet):
        client.get(CALLBACK_URL, query_string=wallet.callback_params(challenge["k1"]))
        client.get(CALLBACK_URL, query_string=other_wallet.callback_params(challenge["k1"]))

        assert _status(client, challenge["k1"])["user"]["lightningPubkey"] == wallet.pubkey

    def test_deactivated_account_is_refused(self, client, challenge, wallet, make_user):
        make_user(name="banned", pubkey=wallet.pubkey, is_active=False)
        client.get(CALLBACK_URL, query_string=wallet.callback_params(challenge["k1"]))

        response = client.get(f"/api/auth/lightning/status/{challenge['k1']}")

        assert response.status_code == 403
        assert response.get_json() == {"error": "Account is deactivated"}

    def test_failing_notifier_does_not_break_signup(self, client, services, challenge, wallet):
        notifier = MagicMock()
        notifier.new_lightning_user.side_effect = RuntimeError("executor shut down")
        services.identity.notifier = notifier
        client.get(CALLBACK_URL, query_string=wallet.callback_params(challenge["k1"]))

        response = client.get(f"/api/auth/lightning/status/{challenge['k1']}")

        assert response.status_code == 200
        status = response.get_json()
        assert status["status"] == "verified"
        assert status["isNew"] is True
        assert status["bonusAwarded"] is True
        notifier.new_lightning_user.assert_called_once_with(status["user"]["name"])

    def test_bonus_can_be_disabled(self, services, wallet):
        services.identity.bonus_sats = 0

        result = services.identity.resolve_login(wallet.pubkey)

        assert result["isNew"] is True
        assert result["bonusAwarded"] is False
        assert result["user"]["balanceSats"] == 0


class TestCallbackValidation:
    def _callback(self, client, **params):
        response = client.get(CALLBACK_URL, query_string=params)
        assert response.status_code == 200
        return response.get_json()

    def test_wrong_tag(self, client, challenge, wallet):
        params = dict(wallet.callback_params(challenge["k1"]), tag="withdrawRequest")

        assert self._callback(client, **params)["reason"] == "Invalid tag"

    def test_missing_parameters(self, client, challenge):
        assert self._callback(client, tag="login", k1=challenge["k1"])["reason"] == "Missing parameters"

    def test_malformed_k1(self, client, wallet):
        params = dict(wallet.callback_params("ab" * 32), k1="xyz")

        assert self._callback(client, **params)["reason"] == "Invalid k1"

    def test_uncompressed_key(self, client, challenge, wallet):
        params = dict(wallet.callback_params(challenge["k1"]), key="04" + "ab" * 64)

        assert self._callback(client, **params)["reason"] == "Invalid key"

    def test_non_hex_signature(self, client, challenge, wallet):
        params = dict(wallet.callback_params(challenge["k1"]), sig="not-a-signature")

        assert self._callback(client, **params)["reason"] == "Invalid signature encoding"

    def test_unknown_challenge(self, client, wallet):
        assert self._callback(client, **wallet.callback_params("ab" * 32))["reason"] == "Challenge not found"

    def test_signature_from_another_key(self, client, challenge, wallet, other_wallet):
        params = dict(wallet.callback_params(challenge["k1"]), sig=other_wallet.sign(challenge["k1"]))

        assert self._callback(client, **params)["reason"] == "Invalid signature"
        # A bad signature does not burn the challenge
        assert _status(client, challenge["k1"]) == {"status": "pending"}
        assert self._callback(client, **wallet.callback_params(challenge["k1"])) == {"status": "OK"}

    def test_uppercase_hex_is_accepted(self, client, challenge, wallet):
        params = wallet.callback_params(challenge["k1"])
        params = {k: v.upper() if k in ("k1", "sig", "key") else v for k, v in params.items()}

        assert self._callback(client, **params) == {"status": "OK"}


class TestExpiry:
    def test_callback_after_expiry(self, client, challenge, wallet, clock):
        clock.advance(seconds=300)

        response = client.get(CALLBACK_URL, query_string=wallet.callback_params(challenge["k1"]))

        assert response.get_json() == {"status": "ERROR", "reason": "Challenge expired"}
        assert _status(client, challenge["k1"]) == {"status": "expired"}

    def test_verified_challenge_stays_verified_past_expiry(self, client, challenge, wallet, clock):
        client.get(CALLBACK_URL, query_string=wallet.callback_params(challenge["k1"]))
        clock.advance(minutes=10)

        assert _status(client, challenge["k1"])["status"] == "verified"

    def test_unknown_k1_polls_as_expired(self, client):
        assert _status(client, "ab" * 32) == {"status": "expired"}

    def test_purge_removes_only_expired(self, services, clock):
        old = services.auth.create_challenge()
        clock.advance(seconds=200)
        fresh = services.auth.create_challenge()
        clock.advance(seconds=150)

        assert services.auth.purge_expired() == 1
        assert challenge_store.get(old["k1"]) is None
        assert challenge_store.get(fresh["k1"]) is not None

    def test_mark_used_is_single_winner(self, services, clock):
        k1 = services.auth.create_challenge()["k1"]

        assert challenge_store.mark_used(k1, "02" + "ab" * 32, clock()) is True
        assert challenge_store.mark_used(k1, "03" + "cd" * 32, clock()) is False
        assert challenge_store.get(k1)["resolved_key"] == "02" + "ab" * 32

    def test_unknown_purpose_is_rejected(self, services):
        with pytest.raises(ValueError):
            services.auth.create_challenge("withdraw")


class TestLinkWallet:
    @pytest.fixture
    def account(self, make_user, auth_headers):
        user_id = make_user(name="carol", email="carol@example.com")
        return user_id, auth_headers(user_id)

    def _verified_link_challenge(self, client, headers, wallet):
        k1 = client.get("/api/auth/link-lightning/challenge", headers=headers).get_json()["k1"]
        client.get(CALLBACK_URL, query_string=wallet.callback_params(k1))
        return k1

    def test_link_requires_login(self, client):
        assert client.get("/api/auth/link-lightning/challenge").status_code == 401

    def test_link_attaches_wallet_and_awards_bonus(self, client, account, wallet):
        user_id, headers = account
        k1 = self._verified_link_challenge(client, headers, wallet)

        response = client.get(f"/api/auth/link-lightning/status/{k1}", headers=headers)
        data = response.get_json()

        assert response.status_code == 200
        assert data["status"] == "linked"
        assert data["bonusAwarded"] is True
        assert data["user"]["id"] == user_id
        assert data["user"]["lightningPubkey"] == wallet.pubkey
        assert data["user"]["balanceSats"] == 1

    def test_link_poll_is_idempotent(self, client, account, wallet):
        _, headers = account
        k1 = self._verified_link_challenge(client, headers, wallet)
        client.get(f"/api/auth/link-lightning/status/{k1}", headers=headers)

        again = client.get(f"/api/auth/link-lightning/status/{k1}", headers=headers).get_json()

        assert again["status"] == "linked"
        assert again["bonusAwarded"] is False
        assert again["user"]["balanceSats"] == 1

    def test_then_wallet_logs_into_linked_account(self, client, account, wallet):
        user_id, headers = account
        k1 = self._verified_link_challenge(client, headers, wallet)
        client.get(f"/api/auth/link-lightning/status/{k1}", headers=headers)

        login_k1 = client.get(CHALLENGE_URL).get_json()["k1"]
        client.get(CALLBACK_URL, query_string=wallet.callback_params(login_k1))
        status = _status(client, login_k1)

        assert status["user"]["id"] == user_id
        assert status["isNew"] is False

    def test_wallet_owned_by_another_account(self, client, account, wallet, make_user):
        make_user(name="owner", pubkey=wallet.pubkey)
        _, headers = account
        k1 = self._verified_link_challenge(client, headers, wallet)

        response = client.get(f"/api/auth/link-lightning/status/{k1}", headers=headers)

        assert response.status_code == 409
        assert response.get_json() == {"error": "This Lightning wallet is already linked to another account"}

    def test_account_already_has_a_wallet(self, client, make_user, auth_headers, wallet, other_wallet):
        user_id = make_user(name="dave", pubkey=other_wallet.pubkey)
        headers = auth_headers(user_id)
        k1 = self._verified_link_challenge(client, headers, wallet)

        response = client.get(f"/api/auth/link-lightning/status/{k1}", headers=headers)

        assert response.status_code == 409
        assert "different Lightning wallet" in response.get_json()["error"]

    def test_pending_link_challenge(self, client, account):
        _, headers = account
        k1 = client.get("/api/auth/link-lightning/challenge", headers=headers).get_json()["k1"]

        assert client.get(f"/api/auth/link-lightning/status/{k1}", headers=headers).get_json() == {
            "status": "pending"
        }
