import re

import pytest

from errors import ValidationError
from intake import (
    generate_reference,
    is_messaging_phone,
    normalize_email,
    normalize_order,
    normalize_phone,
    parse_order_payload,
    zone_fee,
)


def build(settings, order=None, **overrides):
    body = {
        "order": {
            "items": [{"productKey": "mug", "unitTitle": "Mug", "unitPrice": 80, "quantity": 2}],
            "info": {"name": "Aminata", "phone": "+23276123456", "address": "12 Wilkinson Road"},
        }
    }
    if order:
        body["order"].update(order)
    body["order"].update(overrides)
    return normalize_order(parse_order_payload(body), settings)


def test_totals_computed_without_zone(settings):
    order = build(settings)
    assert order.subtotal == 160
    assert order.delivery_fee == 0
    assert order.grand_total == 160
    assert order.items[0].title == "Mug"
    assert order.items[0].line_total == 160


def test_zone_fee_applied_automatically(settings):
    order = build(settings, info={
        "name": "Aminata", "phone": "+23276123456", "address": "Hill Station", "deliveryZone": "Greater Freetown",
    })
    assert order.delivery_fee == 40
    assert order.grand_total == 200


def test_unknown_zone_costs_nothing(settings):
    assert zone_fee("Mars", settings.DELIVERY_ZONE_FEES) == 0
    assert zone_fee("greater freetown", settings.DELIVERY_ZONE_FEES) == 40


def test_trusted_totals_win(settings):
    order = build(settings, subtotal=150, deliveryFee=10, grandTotal=155)
    assert (order.subtotal, order.delivery_fee, order.grand_total) == (150, 10, 155)


def test_trusted_fee_only_still_sums(settings):
    order = build(settings, deliveryFee=15)
    assert order.grand_total == 175


def test_non_finite_trusted_total_is_ignored(settings):
    order = build(settings, grandTotal=float("nan"))
    assert order.grand_total == 160


def test_negative_trusted_total_rejected(settings):
    with pytest.raises(ValidationError):
        build(settings, subtotal=-1)


def test_defaults_on_new_order(settings):
    order = build(settings)
    assert order.status.value == "New"
    assert order.payment_status.value == "Pending"
    assert order.proof_url is None
    assert re.fullmatch(r"LWG-[0-9A-Z]{6}", order.reference)


def test_reference_hint_is_used(settings):
    order = build(settings, referenceHint="lwg-abc123")
    assert order.reference == "LWG-ABC123"


def test_malformed_reference_hint_rejected(settings):
    with pytest.raises(ValidationError):
        build(settings, referenceHint="no spaces allowed!")


def test_empty_items_always_rejected(settings):
    with pytest.raises(ValidationError, match="at least one item"):
        build(settings, items=[])
    with pytest.raises(ValidationError):
        build(settings, items=[], info={})


@pytest.mark.parametrize("item", [
    {"productKey": "mug", "unitTitle": "Mug", "unitPrice": 80, "quantity": 0},
    {"productKey": "mug", "unitTitle": "Mug", "unitPrice": 80, "quantity": -3},
    {"productKey": "mug", "unitTitle": "Mug", "unitPrice": 80, "quantity": 1.5},
    {"productKey": "mug", "unitTitle": "Mug", "unitPrice": -1, "quantity": 1},
    {"productKey": "mug", "unitTitle": "Mug", "unitPrice": 80, "quantity": "2"},
    {"productKey": "mug", "unitTitle": "Mug", "unitPrice": "80", "quantity": 1},
    {"productKey": "mug", "unitTitle": "Mug", "unitPrice": 80, "quantity": True},
])
def test_bad_line_items_rejected(settings, item):
    with pytest.raises(ValidationError):
        build(settings, items=[item])


@pytest.mark.parametrize("info", [
    {"name": "A", "address": "Somewhere"},
    {"name": "A", "address": "Somewhere", "phone": "12", "email": "not-an-email"},
    {"name": "A", "address": "Somewhere", "phone": "", "email": ""},
])
def test_contact_required(settings, info):
    with pytest.raises(ValidationError):
        build(settings, info=info)


def test_empty_address_rejected(settings):
    with pytest.raises(ValidationError, match="address"):
        build(settings, info={"name": "A", "email": "a@b.co", "address": "   "})


def test_contacts_are_normalized(settings):
    order = build(settings, info={
        "name": " Aminata ", "phone": "+232 (76) 123-456", "email": " A@B.CO ", "address": "x",
    })
    assert order.info.name == "Aminata"
    assert order.info.phone == "+23276123456"
    assert order.info.email == "a@b.co"


def test_invalid_secondary_contact_dropped(settings):
    order = build(settings, info={"name": "A", "phone": "call me", "email": "a@b.co", "address": "x"})
    assert order.info.phone is None
    assert order.info.email == "a@b.co"


def test_legacy_flat_payload(settings):
    body = {
        "items": [{"productId": "mug", "title": "Mug", "price": 80, "qty": 2}],
        "deliveryZone": "Greater Freetown",
        "info": {"name": "A", "email": "a@b.co", "address": "x"},
    }
    order = normalize_order(parse_order_payload(body), settings)
    assert order.items[0].product_key == "mug"
    assert order.info.delivery_zone == "Greater Freetown"
    assert order.delivery_fee == 40
    assert order.grand_total == 200


def test_proof_outside_order_is_attached():
    incoming = parse_order_payload({
        "order": {
            "items": [{"productKey": "mug", "unitTitle": "Mug", "unitPrice": 80, "quantity": 1}],
            "info": {"name": "A", "email": "a@b.co", "address": "x"},
        },
        "proof": {"filename": "receipt.png", "contentType": "image/png", "data": "aGVsbG8="},
    })
    assert incoming.proof.filename == "receipt.png"


def test_non_object_payload_rejected():
    with pytest.raises(ValidationError):
        parse_order_payload(["not", "an", "order"])


def test_generated_reference_format():
    refs = {generate_reference("LWG") for _ in range(50)}
    assert all(re.fullmatch(r"LWG-[0-9A-Z]{6}", ref) for ref in refs)
    assert len(refs) > 1


def test_phone_helpers():
    assert normalize_phone("232 76 123 456") == "+23276123456"
    assert normalize_phone("abc") is None
    assert is_messaging_phone("+23276123456")
    assert not is_messaging_phone("23276123456")
    assert not is_messaging_phone("+1234567")
    assert not is_messaging_phone(None)


def test_address_list_is_not_an_email(settings):
    order = build(settings, info={
        "name": "A", "phone": "+23276123456", "email": "a@b.co,victim@evil.com", "address": "x",
    })
    assert order.info.email is None
    assert order.info.phone == "+23276123456"

    with pytest.raises(ValidationError):
        build(settings, info={"name": "A", "email": "a@b.co, victim@evil.com", "address": "x"})


def test_email_helper():
    assert normalize_email(" Aminata@Example.com ") == "aminata@example.com"
    assert normalize_email("a@b.co;c@d.co") is None
    assert normalize_email("no-at-sign") is None
    assert normalize_email(None) is None
