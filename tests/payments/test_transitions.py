import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import CanonicalStatus, PaymentSession, ensure_transition, provider_id_for
from domain.payment.exceptions import StateConflictError


S = CanonicalStatus


@pytest.mark.parametrize(
    "current,target",
    [
        (S.PENDING, S.AUTHORIZED),
        (S.AUTHORIZED, S.CAPTURED),
        (S.CAPTURED, S.REFUNDED),
        (S.AUTHORIZED, S.CANCELED),
        (S.PENDING, S.CANCELED),
        (S.REQUIRES_MORE, S.PENDING),
        (S.PENDING, S.ERROR),
        (S.CAPTURED, S.CAPTURED),
    ],
)
def test_allowed_transitions(current, target):
    ensure_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.PENDING, S.CAPTURED),
        (S.REQUIRES_MORE, S.CAPTURED),
        (S.AUTHORIZED, S.REFUNDED),
        (S.PENDING, S.REFUNDED),
        (S.CAPTURED, S.CANCELED),
        (S.REFUNDED, S.CANCELED),
    ],
)
def test_forbidden_transitions(current, target):
    with pytest.raises(StateConflictError) as exc:
        ensure_transition(current, target)
    assert exc.value.details["current"] == current.value
    assert exc.value.details["target"] == target.value


def test_session_validates_amount_and_currency():
    with pytest.raises(DomainValidationException):
        PaymentSession(id="s1", amount=-1, currency_code="COP", provider_id="pp_payu_payu")
    with pytest.raises(DomainValidationException):
        PaymentSession(id="s1", amount=100, currency_code="CO", provider_id="pp_payu_payu")
    session = PaymentSession(id="s1", amount=100, currency_code="cop", provider_id="pp_payu_payu")
    assert session.currency_code == "COP"
    assert session.status == S.PENDING


def test_session_transition_and_settled():
    session = PaymentSession(id="s1", amount=100, currency_code="COP", provider_id=provider_id_for("payu"))
    assert session.provider_id == "pp_payu_payu"
    session.transition_to(S.AUTHORIZED)
    assert session.is_settled()
    with pytest.raises(StateConflictError):
        session.transition_to(S.REFUNDED)
