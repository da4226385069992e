import copy
import threading

import pytest

from domain.errors import NotFoundError
from domain.models import Registration
from services import registration_service, token_service


def test_generated_tokens_are_opaque():
    a, b = token_service.generate_token(), token_service.generate_token()
    assert a != b
    assert "@" not in a and len(a) >= 32


def test_assign_is_idempotent(engine, event, make_registrations):
    reg = make_registrations(event.id, 1)[0]
    first = token_service.assign_token_if_absent(engine, reg)
    assert reg.token == first
    assert token_service.assign_token_if_absent(engine, reg) == first

    stored = registration_service.get_registration(engine, reg.id)
    assert stored.token == first
    assert registration_service.find_by_token(engine, first).id == reg.id


def test_stale_copy_observes_canonical_token(engine, event, make_registrations):
    reg = make_registrations(event.id, 1)[0]
    stale = copy.deepcopy(reg)  # still thinks token is None

    winner = token_service.assign_token_if_absent(engine, reg)
    loser = token_service.assign_token_if_absent(engine, stale)

    assert loser == winner
    assert stale.token == winner


def test_concurrent_assigners_agree(engine, event, make_registrations):
    reg = make_registrations(event.id, 1)[0]
    results = []
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        results.append(token_service.assign_token_if_absent(engine, copy.deepcopy(reg)))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 4
    assert len(set(results)) == 1
    assert registration_service.get_registration(engine, reg.id).token == results[0]


def test_missing_registration(engine, event):
    ghost = Registration(id=4242, event_id=event.id, name="Ghost", reg_no="G1", email="g@x.com")
    with pytest.raises(NotFoundError):
        token_service.assign_token_if_absent(engine, ghost)
