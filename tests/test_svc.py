import socket
from collections import Counter

import pytest

from natlb.packet import AlreadyExistsError, NotFoundError, ip_to_int
from natlb.sa_pool import SnatAddressPool
from natlb.svc import Service, ServiceTable, ServiceType

VIP = ip_to_int("10.0.0.1")
RS_A = ip_to_int("192.168.1.10")
RS_B = ip_to_int("192.168.1.11")


def make_service():
    table = ServiceTable()
    return table.add(socket.IPPROTO_TCP, VIP, 80)


def test_default_type_is_underlay():
    svc = make_service()
    assert svc.type is ServiceType.UNDERLAY


def test_add_and_find_rs():
    svc = make_service()
    rs = svc.add_rs(RS_A, 8080, 3)
    assert svc.find_rs(RS_A, 8080) is rs
    assert rs.weight == 3
    assert svc.rs_cnt == 1


def test_find_rs_missing_returns_none():
    svc = make_service()
    svc.add_rs(RS_A, 8080, 1)
    assert svc.find_rs(RS_A, 8081) is None


def test_duplicate_rs_rejected():
    svc = make_service()
    svc.add_rs(RS_A, 8080, 1)
    with pytest.raises(AlreadyExistsError):
        svc.add_rs(RS_A, 8080, 5)
    assert svc.rs_cnt == 1


def test_remove_rs():
    svc = make_service()
    svc.add_rs(RS_A, 8080, 1)
    svc.add_rs(RS_B, 8080, 1)
    svc.remove_rs(RS_A, 8080)
    assert svc.find_rs(RS_A, 8080) is None
    assert svc.rs_cnt == 1


def test_remove_missing_rs_raises():
    svc = make_service()
    with pytest.raises(NotFoundError):
        svc.remove_rs(RS_A, 8080)


def test_newest_rs_first():
    svc = make_service()
    svc.add_rs(RS_A, 8080, 1)
    newest = svc.add_rs(RS_B, 8080, 1)
    assert svc.rs_list[0] is newest
    assert svc.schedule(0) is newest


def test_schedule_empty_service_returns_none():
    svc = make_service()
    assert svc.schedule(0) is None


def test_schedule_follows_weights():
    svc = make_service()
    light = svc.add_rs(RS_A, 8080, 1)
    heavy = svc.add_rs(RS_B, 8080, 2)
    picks = Counter(svc.schedule(1) for _ in range(30))
    assert picks[heavy] == 2 * picks[light]
    assert picks[light] + picks[heavy] == 30


def test_schedule_per_lcore_independent():
    svc = make_service()
    svc.add_rs(RS_A, 8080, 1)
    svc.add_rs(RS_B, 8080, 1)
    first_on_0 = svc.schedule(0)
    assert svc.schedule(1) is first_on_0


def test_service_table_add_find_remove():
    table = ServiceTable()
    svc = table.add(socket.IPPROTO_UDP, VIP, 53)
    assert table.find(socket.IPPROTO_UDP, VIP, 53) is svc
    assert table.find(socket.IPPROTO_TCP, VIP, 53) is None
    table.remove(socket.IPPROTO_UDP, VIP, 53)
    assert table.find(socket.IPPROTO_UDP, VIP, 53) is None
    assert len(table) == 0


def test_service_table_duplicate_and_missing():
    table = ServiceTable()
    table.add(socket.IPPROTO_TCP, VIP, 80)
    with pytest.raises(AlreadyExistsError):
        table.add(socket.IPPROTO_TCP, VIP, 80)
    with pytest.raises(NotFoundError):
        table.remove(socket.IPPROTO_TCP, VIP, 81)


def test_on_add_receives_vip():
    seen = []
    table = ServiceTable(on_add=seen.append)
    table.add(socket.IPPROTO_TCP, VIP, 80)
    assert seen == [VIP]


def test_rs_gets_snat_pools_for_workers():
    pool = SnatAddressPool()
    snat_ip = ip_to_int("172.16.0.1")
    pool.add(1, snat_ip)
    table = ServiceTable(snat_pool=pool, worker_lcores=(1, 2))
    svc = table.add(socket.IPPROTO_TCP, VIP, 80)
    rs = svc.add_rs(RS_A, 8080, 1)
    assert set(rs.snat_pools) == {1, 2}
    assert [p.snat_ip for p in rs.snat_pools[1].pools] == [snat_ip]
    assert rs.snat_pools[2].pools == []


def test_load_config_creates_service_and_rs():
    table = ServiceTable()
    conf = {"vip": "10.0.0.1", "vport": 80, "proto": 6, "pip": "192.168.1.10", "pport": 8080, "weight": 3}
    table.load_config(conf)
    svc = table.find(6, VIP, 80)
    assert svc is not None
    assert svc.find_rs(RS_A, 8080).weight == 3


def test_load_config_reuses_service():
    table = ServiceTable()
    base = {"vip": "10.0.0.1", "vport": 80, "proto": 6, "pport": 8080, "weight": 1}
    table.load_config({**base, "pip": "192.168.1.10"})
    table.load_config({**base, "pip": "192.168.1.11"})
    assert len(table) == 1
    assert table.find(6, VIP, 80).rs_cnt == 2


def test_load_config_duplicate_rs_raises():
    table = ServiceTable()
    conf = {"vip": "10.0.0.1", "vport": 80, "proto": 6, "pip": "192.168.1.10", "pport": 8080, "weight": 1}
    table.load_config(conf)
    with pytest.raises(AlreadyExistsError):
        table.load_config(conf)


def test_direct_service_construction_schedules():
    svc = Service(socket.IPPROTO_TCP, VIP, 80)
    rs = svc.add_rs(RS_A, 8080, 4)
    assert [svc.schedule(0) for _ in range(3)] == [rs, rs, rs]