"""Gateway client lifecycle: lazy build, single-flight swap, deferred close."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FakePushGateway, GatewayFactory

from fiscalpush.services.notification.gateway import GatewayHandle, GatewayReinitError, is_credential_expiry


def test_first_lease_builds_the_client_once():
    factory = GatewayFactory(FakePushGateway(), FakePushGateway())
    handle = GatewayHandle(factory)

    with handle.lease() as (client, generation):
        assert generation == 1
    with handle.lease() as (again, generation):
        assert again is client
        assert generation == 1
    assert len(factory.built) == 1


def test_stale_generation_does_not_rebuild():
    factory = GatewayFactory(FakePushGateway(), FakePushGateway(), FakePushGateway())
    handle = GatewayHandle(factory)
    with handle.lease():
        pass

    assert handle.reinitialize(1) == 2
    assert handle.reinitialize(1) == 2
    assert len(factory.built) == 2


def test_concurrent_reinitialize_is_single_flight():
    """Many senders seeing the same expired generation trigger one rebuild."""

    factory = GatewayFactory(*(FakePushGateway() for _ in range(10)))
    handle = GatewayHandle(factory)
    with handle.lease():
        pass
    barrier = threading.Barrier(8)

    def reinit(_):
        barrier.wait()
        return handle.reinitialize(1)

    with ThreadPoolExecutor(max_workers=8) as pool:
        generations = list(pool.map(reinit, range(8)))

    assert generations == [2] * 8
    assert len(factory.built) == 2


def test_replaced_client_closed_after_last_lease_returns():
    first, second = FakePushGateway(), FakePushGateway()
    handle = GatewayHandle(GatewayFactory(first, second))

    with handle.lease() as (client, generation):
        handle.reinitialize(generation)
        assert client is first
        assert first.closed is False
    assert first.closed is True

    with handle.lease() as (client, generation):
        assert client is second
        assert generation == 2


def test_idle_client_closed_immediately_on_swap():
    first, second = FakePushGateway(), FakePushGateway()
    handle = GatewayHandle(GatewayFactory(first, second))
    with handle.lease():
        pass

    handle.reinitialize(1)
    assert first.closed is True
    assert second.closed is False


def test_factory_failure_raises_reinit_error():
    handle = GatewayHandle(GatewayFactory())

    with pytest.raises(GatewayReinitError, match="credentials file unreadable"):
        with handle.lease():
            pass


def test_credential_expiry_signatures():
    assert is_credential_expiry(Exception("Error fetching access token: invalid_grant: Invalid JWT Signature."))
    assert not is_credential_expiry(Exception("Requested entity was not found."))
