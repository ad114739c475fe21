"""
Token account provider protocol.

Defines the interface for the external prepaid token account (VirtFusion).
Balances are integer tokens; 100 tokens equal one currency unit.
"""
from typing import Protocol, Optional, Dict, Any
from dataclasses import dataclass, field


@dataclass
class TokenOperation:
    """Result of a credit or debit against the token account."""
    external_id: str
    tokens: int  # signed: negative for debits
    reference: str
    external_operation_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class TokenAccountProvider(Protocol):
    """
    Protocol for token account providers.

    Implementations must handle:
    - Live balance reads (may be negative)
    - Debits and credits carrying a caller reference
    """

    def get_balance(self, external_id: str) -> int:
        """
        Read the current token balance.

        Raises:
            TokenAccountError: If the balance cannot be read
        """
        ...

    def debit(self, external_id: str, tokens: int, reference: str) -> TokenOperation:
        """
        Remove tokens from the account.

        Args:
            external_id: External relation id of the account
            tokens: Positive number of tokens to remove
            reference: Caller reference (local ledger transaction id)

        Raises:
            TokenAccountError: If the debit fails
        """
        ...

    def credit(self, external_id: str, tokens: int, reference: str) -> TokenOperation:
        """
        Add tokens to the account.

        The external system may silently apply part of a credit to a
        negative balance.

        Raises:
            TokenAccountError: If the credit fails
        """
        ...


class TokenAccountError(Exception):
    """Raised when the token account provider fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
