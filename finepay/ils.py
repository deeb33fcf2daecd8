"""ILS (library system) connector contract.

The service never talks to a library system directly: a connector
implementing `IlsConnector` is installed at start-up with `set_ils()`.
"""

from dataclasses import dataclass
from typing import Protocol

FINES_CHANGED = "Payment::error_fines_changed"


@dataclass(frozen=True)
class RegistrationResult:
    success: bool
    reason: str | None = None

    @property
    def fines_changed(self) -> bool:
        return self.reason == FINES_CHANGED


class IlsConnector(Protocol):
    def get_patron(self, user, cat_username: str) -> dict | None:
        """Log in the patron owning `cat_username` for `user`."""
        ...

    def get_my_profile(self, patron: dict) -> dict:
        ...

    def get_my_fines(self, patron: dict) -> list[dict]:
        ...

    def get_online_payment_details(self, patron: dict, fines: list[dict], selected_fine_ids: list[str] | None) -> dict:
        """Return {"payable": bool, "amount": int, "fines": [...], "reason": str | None}."""
        ...

    def register_payment(
        self,
        patron: dict,
        amount: int,
        local_identifier: str,
        remote_identifier: str | None,
        payment_id: int,
        fine_ids: list[str] | None,
    ) -> RegistrationResult:
        ...


_current_ils: IlsConnector | None = None


def get_ils() -> IlsConnector:
    if _current_ils is None:
        raise RuntimeError("ILS connector not configured")
    return _current_ils


def set_ils(ils: IlsConnector | None) -> None:
    """Install the ILS connector (tests install fakes here)."""
    global _current_ils
    _current_ils = ils
