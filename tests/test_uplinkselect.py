import random

from blockserve.altservers import SERVER_BAD_UPLINK_MAX, SERVER_RTT_PROBES, AltServerList
from blockserve.config import ServerConfig
from blockserve.hosts import parse_address
from blockserve.uplinkselect import UplinkAltState, host_list_for_replication


def make_list(count, config=None, **flags):
    alts = AltServerList(config or ServerConfig())
    for i in range(count):
        alts.add(parse_address(f"10.0.0.{i + 1}"), **flags)
    return alts


def test_shortcut_returns_all_in_order():
    state = UplinkAltState(make_list(3))
    assert state.list_for_uplink("img", 4, 0) == [0, 1, 2]


def test_size_zero_gives_empty():
    state = UplinkAltState(make_list(3))
    assert state.list_for_uplink("img", 0, 0) == []


def test_namespace_filter():
    alts = make_list(3)
    alts[1].namespaces.append("linux/")
    state = UplinkAltState(alts)
    assert state.list_for_uplink("windows/x", 4, 0) == [0, 2]
    assert state.list_for_uplink("linux/x", 4, 0) == [0, 1, 2]


def test_client_only_excluded_unless_current_or_panic():
    alts = make_list(1)
    alts.add(parse_address("10.0.1.1"), is_client_only=True)
    alts.add(parse_address("10.0.1.2"))
    state = UplinkAltState(alts)
    assert state.list_for_uplink("img", 4, 0) == [0, 2]
    assert state.list_for_uplink("img", 4, 1) == [0, 1, 2]
    assert state.list_for_uplink("img", 4, None) == [0, 1, 2]


def test_proxy_private_only():
    config = ServerConfig(proxy_private_only=True)
    alts = AltServerList(config)
    alts.add(parse_address("10.0.0.1"), is_private=True)
    alts.add(parse_address("10.0.0.2"))
    state = UplinkAltState(alts)
    assert state.list_for_uplink("img", 4, 0) == [0]


def test_random_selection_includes_current():
    random.seed(1234)
    state = UplinkAltState(make_list(10))
    result = state.list_for_uplink("img", 4, 3)
    assert result[0] == 3
    assert len(result) == 4
    assert len(set(result)) == 4
    assert all(0 <= i < 10 for i in result)


def test_random_selection_unusable_only_current():
    state = UplinkAltState(make_list(10, is_client_only=True))
    assert state.list_for_uplink("img", 4, 0) == [0]


def test_random_panic_fills_with_unusable():
    random.seed(99)
    state = UplinkAltState(make_list(10, is_client_only=True))
    result = state.list_for_uplink("img", 4, None)
    assert len(result) == 4
    assert len(set(result)) == 4


def test_update_rtt_first_fills_history():
    alts = make_list(2)
    state = UplinkAltState(alts)
    assert state.update_rtt(1, 100) == 100
    assert state.locals[1].rtt == [100] * SERVER_RTT_PROBES
    assert 100 in alts[1].rtt


def test_update_rtt_averages():
    alts = make_list(1)
    state = UplinkAltState(alts)
    state.update_rtt(0, 100)
    avg = state.update_rtt(0, 600)
    assert avg == 200
    assert avg in alts[0].rtt


def test_image_failed_blocks_locally():
    state = UplinkAltState(make_list(1))
    for _ in range(SERVER_BAD_UPLINK_MAX + 1):
        state.image_failed(0)
    assert state.locals[0].blocked is True
    fails = state.locals[0].fails
    assert state.is_usable(0, 1000.0) is False
    assert state.locals[0].fails == fails - 1


def test_global_block_respects_dup_time():
    alts = make_list(1)
    server = alts[0]
    server.blocked = True
    server.fails = 1
    server.last_fail = 100.0
    state = UplinkAltState(alts)
    assert state.is_usable(0, 101.0) is False
    assert state.is_usable(0, 200.0) is True
    assert server.blocked is False
    assert server.last_fail == 200.0


def test_host_list_for_replication():
    alts = make_list(3)
    hosts = host_list_for_replication(alts, "img", 8)
    assert hosts == [alts.index_to_host(i) for i in range(3)]