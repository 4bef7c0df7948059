# zlink_wallet/utils/payment_uri.py - <scheme>:<address>?amt=<amount>&memo=<text> links
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from urllib.parse import parse_qs, quote, urlencode

from zlink_wallet.core.exceptions import PaymentURIError
from zlink_wallet.core.types import Recipient
from zlink_wallet.utils.validation import AddressValidator, parse_amount


@dataclass(frozen=True)
class PaymentURI:
    address: str
    amount: Optional[Decimal] = None
    memo: Optional[str] = None

    def to_recipient(self) -> Recipient:
        return Recipient(self.address, self.amount if self.amount is not None else Decimal("0"), self.memo)


def parse_payment_uri(uri: str, scheme: str = "hush",
                      validator: Optional[AddressValidator] = None) -> PaymentURI:
    uri = uri.strip()
    prefix = f"{scheme}:"
    if not uri.lower().startswith(prefix):
        raise PaymentURIError(f"Not a {scheme} payment URI: {uri!r}")

    body = uri[len(prefix):]
    if body.startswith("//"):
        body = body[2:]
    address, _, query = body.partition("?")
    address = address.rstrip("/")
    if not address:
        raise PaymentURIError("Payment URI has no address")
    if validator is not None and not validator.is_valid(address):
        raise PaymentURIError(f"Payment URI has an invalid address: {address!r}")

    params = parse_qs(query, keep_blank_values=True)
    amount = None
    raw_amount = (params.get("amt") or params.get("amount") or [None])[0]
    if raw_amount:
        amount = parse_amount(raw_amount)
        if amount is None:
            raise PaymentURIError(f"Payment URI has an invalid amount: {raw_amount!r}")

    memo = (params.get("memo") or [None])[0] or None
    return PaymentURI(address, amount, memo)


def build_payment_uri(address: str, amount: Optional[Decimal] = None,
                      memo: Optional[str] = None, scheme: str = "hush") -> str:
    query = {}
    if amount is not None:
        query["amt"] = format(Decimal(amount).normalize(), "f")
    if memo:
        query["memo"] = memo
    uri = f"{scheme}:{address}"
    if query:
        uri += "?" + urlencode(query, quote_via=quote)
    return uri
