"""Short-lived login tickets in Valkey.

Two kinds:

- Two-factor ticket: "password verified, second factor pending". Keyed by the
  SHA-256 of the plaintext so a Valkey dump does not yield usable tickets.
  A per-user pointer keeps at most one ticket live per user; issuing a new one
  deletes the previous. A redemption claims the ticket with ``GETDEL`` before
  any code is checked, so concurrent redemptions of one ticket never reach the
  verifier together. A wrong code puts the ticket back for its remaining life.
- OAuth ticket: provider identity whose email is still undetermined. Redeemed
  with ``GETDEL`` so it is read and destroyed in one step.
"""

import logging
import secrets
from datetime import datetime, timedelta

from clients.valkey_client import ValkeyClient
from auth.config import AuthConfig
from auth.exceptions import InvalidTwoFactorTicketError, OAuthTicketInvalidError
from auth.tokens import hash_token
from auth.types import OAuthClaims, TwoFactorTicket
from utils.timezone import now_utc, parse_iso, seconds_until

logger = logging.getLogger(__name__)


class TicketStore:
    """Issue, claim and redeem two-factor and OAuth tickets."""

    TWO_FACTOR_PREFIX = "ticket:2fa:"
    TWO_FACTOR_USER_PREFIX = "ticket:2fa:user:"
    OAUTH_PREFIX = "ticket:oauth:"

    def __init__(self, valkey: ValkeyClient, config: AuthConfig):
        self._valkey = valkey
        self._two_factor_ttl = config.two_factor_ticket_ttl_minutes * 60
        self._oauth_ttl = config.oauth_ticket_ttl_minutes * 60

    # -- two-factor --------------------------------------------------------

    def _two_factor_key(self, ticket_id: str) -> str:
        return f"{self.TWO_FACTOR_PREFIX}{ticket_id}"

    def _user_key(self, user_id: int) -> str:
        return f"{self.TWO_FACTOR_USER_PREFIX}{user_id}"

    def issue_two_factor_ticket(self, user_id: int) -> tuple[str, datetime]:
        """
        Issue a ticket for ``user_id``, revoking the user's previous one.

        Returns:
            (plaintext ticket, expires_at)
        """
        ticket = secrets.token_urlsafe(32)
        ticket_id = hash_token(ticket)
        now = now_utc()

        self._valkey.set_json(
            self._two_factor_key(ticket_id),
            {"user_id": user_id, "issued_at": now.isoformat()},
            expire_seconds=self._two_factor_ttl,
        )
        previous = self._valkey.swap(self._user_key(user_id), ticket_id, self._two_factor_ttl)
        if previous and previous != ticket_id:
            self._valkey.delete(self._two_factor_key(previous))
        return ticket, now + timedelta(seconds=self._two_factor_ttl)

    def claim_two_factor_ticket(self, ticket: str) -> TwoFactorTicket:
        """
        Take a live ticket out of the store.

        Of several concurrent claims of one ticket exactly one succeeds. The
        claimer either finishes the ticket or releases it back.

        Raises:
            InvalidTwoFactorTicketError: Unknown, expired, superseded or already claimed.
        """
        if not ticket:
            raise InvalidTwoFactorTicketError()
        ticket_id = hash_token(ticket)
        data = self._valkey.pop_json(self._two_factor_key(ticket_id))
        if data is None:
            raise InvalidTwoFactorTicketError()
        return TwoFactorTicket(
            ticket_id=ticket_id,
            user_id=int(data["user_id"]),
            issued_at=parse_iso(data["issued_at"]),
        )

    def release_two_factor_ticket(self, claimed: TwoFactorTicket) -> bool:
        """
        Put a claimed ticket back with the lifetime it had left.

        Nothing is restored once the ticket has expired or a newer login
        replaced it as the user's live ticket.

        Returns:
            True if the ticket is usable again.
        """
        remaining = seconds_until(claimed.issued_at + timedelta(seconds=self._two_factor_ttl))
        if remaining <= 0:
            return False

        key = self._two_factor_key(claimed.ticket_id)
        self._valkey.set_json(
            key,
            {"user_id": claimed.user_id, "issued_at": claimed.issued_at.isoformat()},
            expire_seconds=remaining,
        )
        # A newer login may have moved the pointer while the ticket was out.
        if self._valkey.get(self._user_key(claimed.user_id)) != claimed.ticket_id:
            self._valkey.delete(key)
            return False
        return True

    def finish_two_factor_ticket(self, claimed: TwoFactorTicket) -> None:
        """Drop the user's pointer to a ticket that was redeemed."""
        if self._valkey.get(self._user_key(claimed.user_id)) == claimed.ticket_id:
            self._valkey.delete(self._user_key(claimed.user_id))

    # -- OAuth -------------------------------------------------------------

    def _oauth_key(self, ticket: str) -> str:
        return f"{self.OAUTH_PREFIX}{hash_token(ticket)}"

    def issue_oauth_ticket(self, claims: OAuthClaims) -> tuple[str, datetime]:
        ticket = secrets.token_urlsafe(32)
        self._valkey.set_json(
            self._oauth_key(ticket),
            claims.model_dump(mode="json"),
            expire_seconds=self._oauth_ttl,
        )
        return ticket, now_utc() + timedelta(seconds=self._oauth_ttl)

    def redeem_oauth_ticket(self, ticket: str) -> OAuthClaims:
        """
        Read and destroy a ticket atomically. A second redemption fails.

        Raises:
            OAuthTicketInvalidError: Unknown, expired or already redeemed.
        """
        if not ticket:
            raise OAuthTicketInvalidError()
        data = self._valkey.pop_json(self._oauth_key(ticket))
        if data is None:
            raise OAuthTicketInvalidError()
        return OAuthClaims(**data)
