from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import ForbiddenError, NotFoundError
from models import Account, Ledger, LedgerMember, LedgerRole


WRITE_ROLES = frozenset({LedgerRole.owner, LedgerRole.admin, LedgerRole.editor})
SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    ledger_id: str
    role: LedgerRole

    @classmethod
    def system(cls, ledger_id: str) -> "AuthContext":
        return cls(user_id=SYSTEM_ACTOR, ledger_id=ledger_id, role=LedgerRole.owner)

    @property
    def can_write(self) -> bool:
        return self.role in WRITE_ROLES

    def require(self, ledger_id: Optional[str] = None, *, write: bool = False) -> None:
        if ledger_id is not None and ledger_id != self.ledger_id:
            raise ForbiddenError("Context is scoped to a different ledger")
        if write and not self.can_write:
            raise ForbiddenError(
                f"Requires role owner|admin|editor, you have {self.role.value}"
            )


class LedgerAccess:
    def __init__(self, session: Session) -> None:
        self.session = session

    def ledger(self, ledger_id: str) -> Ledger:
        ledger = self.session.get(Ledger, ledger_id)
        if not ledger or not ledger.is_active:
            raise NotFoundError("Ledger not found")
        return ledger

    def authorize(
        self,
        ledger_id: str,
        user_id: Optional[str],
        roles: Optional[Iterable[LedgerRole]] = None,
    ) -> AuthContext:
        self.ledger(ledger_id)
        if not user_id:
            raise ForbiddenError("Missing caller identity")
        member = self.session.scalar(
            select(LedgerMember).where(
                LedgerMember.ledger_id == ledger_id,
                LedgerMember.user_id == user_id,
            )
        )
        if not member:
            raise ForbiddenError("Not a member of this ledger")
        allowed = set(roles) if roles is not None else None
        if allowed is not None and member.role not in allowed:
            names = "|".join(sorted(r.value for r in allowed))
            raise ForbiddenError(f"Requires role {names}, you have {member.role.value}")
        return AuthContext(user_id=user_id, ledger_id=ledger_id, role=member.role)

    def account(self, ctx: AuthContext, account_id: str) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.ledger_id != ctx.ledger_id:
            raise NotFoundError("Account not found in this ledger")
        return account
