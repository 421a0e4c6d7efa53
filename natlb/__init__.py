"""NAT load balancer data path over byte-buffer packets: IPv4 stack, routing, ARP, NAT, scheduling, session sync and health checks."""

__version__ = "0.1.0"