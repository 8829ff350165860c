from api.middleware.logging import LoggingMiddleware
from core.logging_config import mask_sensitive


async def _noop_app(scope, receive, send):
    return None


def test_request_body_card_fields_are_masked():
    middleware = LoggingMiddleware(_noop_app)

    sanitized = middleware.sanitize({
        "card_number": "4097440000000004",
        "cvv": "321",
        "holder_name": "APPROVED",
        "payer": {"card": {"number": "4097440000000004", "expiry_year": "30"}},
        "sign": "abc",
    })

    assert sanitized["card_number"] == "***"
    assert sanitized["cvv"] == "***"
    assert sanitized["sign"] == "***"
    assert sanitized["holder_name"] == "APPROVED"
    assert sanitized["payer"]["card"] == {"number": "***", "expiry_year": "***"}


def test_structlog_processor_masks_secrets():
    event = mask_sensitive(None, "info", {"event": "payu_request", "api_key": "k", "reference": "order-1"})

    assert event == {"event": "payu_request", "api_key": "***", "reference": "order-1"}
