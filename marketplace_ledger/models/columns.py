from datetime import datetime, timezone

from sqlalchemy import Numeric

# Ledger amounts keep sub-cent precision; rounding to cents happens only when
# an amount is submitted to the payout rail.
Money = Numeric(14, 4, asdecimal=True)
Price = Numeric(12, 2, asdecimal=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
