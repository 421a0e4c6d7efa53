# natlb

`natlb` models the data path of a NAT load balancer. Packets are
`natlb.packet.Packet` objects holding a `bytearray`; the package parses,
rewrites and forwards them the way an in-line load balancer does.

## What is in it

- `natlb.packet`: the `Packet` buffer (`prepend`, `append`, `adj`, `trim`),
  the `Flow4` flow key, `PacketFlags`, `PipelineAction`,
  `internet_checksum`, `ip_to_int` / `int_to_ip`, and the errors
  `LbError`, `AlreadyExistsError`, `NotFoundError` and `NoSnatPortError`.
- `natlb.ipv4.Ipv4Stack`: dispatches Ethernet frames by ether type
  (`deliver_l3`), validates IPv4 headers and checksums (`receive`), hands
  locally delivered packets to registered L4 handlers (`local_in`,
  `register_l4_handler`), forwards, and sends packets (`output`,
  `local_out`). TCP, UDP and ICMP packets go through an optional `pipeline`
  callable; without one they are dropped. Drops are counted in `DropStats`.
- `natlb.l4`: `TcpHeader` (`parse`, `pack`), `TcpDispatcher` and
  `UdpDispatcher` keyed by destination port, `udp_out`, `icmp_receive`
  (echo replies), `gre_decap`, and `install` to register all of them on a
  stack.
- `natlb.route`: `RouteTable` with longest-prefix-match `lookup`,
  `RouteEntry`, `RouteCache`, `RouteFlags` and the `route_in` stage.
- `natlb.neigh`: `NeighborTable` that queues packets for unresolved next
  hops, sends ARP requests (`build_arp_request`) and releases the queue when
  an ARP reply arrives (`arp_receive`); `Port` and `fill_mac`.
- `natlb.svc`: `ServiceTable`, `Service`, `RealServer` and `ServiceType`.
- `natlb.scheduler`: `WrrScheduler` (weighted round robin), `WrrState`,
  `gcd` and `get_scheduler("wrr")`.
- `natlb.sa_pool`: `SnatAddressPool` of per-lcore source-NAT addresses and
  `SnatPoolArray.get`, which hands out address/port pairs round robin.
- `natlb.nat`: `dnat`, `snat` and `nat_checksum_update` for incremental
  TCP/UDP checksum fixes.
- `natlb.lb`: `LoadBalancer` that schedules new `Connection`s to real
  servers and applies DNAT/SNAT in both directions (`schedule`, `process`,
  `describe`).
- `natlb.sync`: `SessionSync` batching connections into sync packets
  (`sync_one`, `flush`, `receive`), with `encode_connection` and
  `decode_connection`.
- `natlb.ha`: `HealthChecker` sending TCP SYN probes (`build_syn`,
  `build_rst`) and marking targets `HEALTHY` or `FAILED` (`RsStatus`).

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from natlb.packet import ip_to_int
from natlb.sa_pool import SnatAddressPool
from natlb.svc import ServiceTable

snat = SnatAddressPool()
snat.load_config({"lcore_id": 1, "snat_ip": "172.16.0.1"})

services = ServiceTable(snat_pool=snat, worker_lcores=(1,))
services.load_config({
    "vip": "10.0.0.1", "vport": 80, "proto": 6,
    "pip": "192.168.1.10", "pport": 8080, "weight": 2,
})
services.load_config({
    "vip": "10.0.0.1", "vport": 80, "proto": 6,
    "pip": "192.168.1.11", "pport": 8080, "weight": 1,
})

svc = services.find(6, ip_to_int("10.0.0.1"), 80)
rs = svc.schedule(1)                       # a RealServer, chosen by weight
snat_ip, snat_port = rs.snat_pools[1].get(6, rs.rs_ip, rs.rs_port, lambda *_: False)
```

Configuration is passed as plain mappings to the `load_config` methods of
`SnatAddressPool`, `ServiceTable`, `SessionSync` and `HealthChecker`.

## What it does not do

- It does no network I/O. A `Port` passes transmitted packets to its `sink`
  callable or collects them in its `sent` list; `SessionSync` and
  `HealthChecker` without a stack keep their packets in `sent`.
- It reads no configuration files; callers parse them and pass the tables.
- There is no connection-tracking table. Callers create `Connection`
  objects and supply the `in_use` check that tells whether a source-NAT
  pair is taken.
- There are no timers of its own: `SessionSync.flush` and
  `HealthChecker.run_due` are called with the current time.
- Health checks probe TCP servers only; UDP targets are kept but not probed.
- There is no command-line program.