from unittest.mock import MagicMock, patch

import pybreaker

from scriptmarket.services import circuit_breaker
from scriptmarket.services.circuit_breaker import RedisCircuitBreakerStorage


def _storage():
    with patch.object(circuit_breaker.redis.Redis, "from_url", return_value=MagicMock()) as from_url:
        storage = RedisCircuitBreakerStorage("tradingview")
    return storage, from_url.return_value


def test_state_defaults_to_closed():
    storage, client = _storage()
    client.get.return_value = None
    assert storage.state == pybreaker.STATE_CLOSED
    client.get.assert_called_with("cb:tradingview:state")


def test_counter_reads_int():
    storage, client = _storage()
    client.get.return_value = "4"
    assert storage.counter == 4


def test_increment_counter_sets_ttl():
    storage, client = _storage()
    storage.increment_counter()
    client.incr.assert_called_once_with("cb:tradingview:counter")
    client.expire.assert_called_once()


def test_opening_sets_state_key():
    storage, client = _storage()
    storage.state = pybreaker.STATE_OPEN
    args, kwargs = client.set.call_args
    assert args == ("cb:tradingview:state", pybreaker.STATE_OPEN)
    assert kwargs["ex"] > 0
