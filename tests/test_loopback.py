import socket
import urllib.request
from concurrent.futures import ThreadPoolExecutor

import pytest

from phototool.loopback import Loopback, is_addr_in_use


def hello_app(environ, start_response):
    body = b"ok"
    start_response("200 OK", [("Content-Type", "text/plain"), ("Content-Length", "2")])
    return [body]


def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def loopback():
    lb = Loopback(hello_app, "127.0.0.1", free_port())
    yield lb
    lb.close()


def fetch(url):
    with urllib.request.urlopen(url, timeout=3) as resp:
        return resp.status, resp.read()


def test_idempotent(loopback):
    first = loopback.ensure_running()
    second = loopback.ensure_running()
    assert first.startswith("http://127.0.0.1:")
    assert first == second


def test_concurrent_calls_share_base(loopback):
    with ThreadPoolExecutor(max_workers=3) as pool:
        bases = list(pool.map(lambda _: loopback.ensure_running(), range(3)))
    assert len(bases) == 3
    assert bases[0].startswith("http://127.0.0.1:")
    assert bases[0] == bases[1] == bases[2]


def test_close_then_restart_serves(loopback):
    base1 = loopback.ensure_running()
    assert "127.0.0.1:" in base1
    assert fetch(base1 + "/s/x") == (200, b"ok")
    loopback.close()
    base2 = loopback.ensure_running()
    assert base1 == base2
    assert fetch(base2 + "/s/x") == (200, b"ok")


def test_port_in_use_moves_on():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        s.listen()
        taken = s.getsockname()[1]
        lb = Loopback(hello_app, "127.0.0.1", taken)
        try:
            base = lb.ensure_running()
            assert not base.endswith(f":{taken}")
        finally:
            lb.close()


def test_is_addr_in_use():
    assert is_addr_in_use(OSError("bind: address already in use"))
    assert is_addr_in_use(OSError("Only one usage of each socket address"))
    assert not is_addr_in_use(OSError("permission denied"))
    assert not is_addr_in_use(None)