from .validation import AddressValidator, encode_memo, parse_amount, validate_request
from .payment_uri import PaymentURI, build_payment_uri, parse_payment_uri

__all__ = [
    'AddressValidator',
    'encode_memo',
    'parse_amount',
    'validate_request',
    'PaymentURI',
    'build_payment_uri',
    'parse_payment_uri'
]
