"""
btcbasis/services/errors.py

Domain errors raised by the service layer. Services carry no HTTP knowledge;
routers translate these into HTTPException status codes.

There is no error for a short position: running out of lots is
reported through CostBasisResult.insufficient_btc, not raised.
"""


class CostBasisError(Exception):
    """Base class for every error this package raises on purpose."""


class InvalidInputError(CostBasisError, ValueError):
    """Rejected at the boundary before touching persistence or the network."""


class DisposalNotFoundError(CostBasisError, LookupError):
    """An operation required an existing disposal and there was none."""

    def __init__(self, company_id: int, transaction_id: int):
        self.company_id = company_id
        self.transaction_id = transaction_id
        super().__init__(
            f"Transaction {transaction_id} not found for company {company_id}"
        )


class UpstreamFetchError(CostBasisError):
    """A market-data provider could not supply a usable price."""

    def __init__(self, message: str, provider: str | None = None):
        self.provider = provider
        super().__init__(message)


class AllocationConflictError(CostBasisError):
    """
    A lot changed between reading and writing (stale preview, or another
    writer committed first). Nothing from the failed commit was applied.
    """
