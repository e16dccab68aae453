"""LAN 주소 정렬 테스트."""

from voicelink.signaling import network


def test_order_addresses_prefers_hotspot_and_skips_bridges():
    ordered = network.order_addresses([
        "8.8.4.4", "127.0.0.1", "192.168.43.1", "172.17.0.2", "10.0.0.5", "192.168.43.1",
    ])
    assert ordered == ["192.168.43.1", "10.0.0.5", "8.8.4.4"]


def test_get_local_ip_prefers_static_ip():
    assert network.get_local_ip("10.1.2.3", ["192.168.0.2"]) == "10.1.2.3"
    assert network.get_local_ip(None, ["192.168.0.2", "8.8.4.4"]) == "192.168.0.2"


def test_get_local_ip_falls_back_to_localhost():
    assert network.get_local_ip(None, []) == "localhost"


def test_describe_addresses(monkeypatch):
    monkeypatch.setattr(network, "_candidate_addresses", lambda: ["172.18.0.1", "192.168.43.1"])

    info = network.describe_addresses(3000, host_header="localhost:3000")
    assert info["primary"] == "192.168.43.1"
    assert info["all"] == ["192.168.43.1"]
    assert info["url"] == "http://192.168.43.1:3000"
    assert info["urls"] == ["http://192.168.43.1:3000"]
    assert info["accessedVia"] == "localhost"
    assert info["networkIPs"] == ["192.168.43.1"]

    info = network.describe_addresses(3000, host_header="192.168.43.1:3000", static_ip="10.9.9.9")
    assert info["primary"] == "10.9.9.9"
    assert info["accessedVia"] == "network"
