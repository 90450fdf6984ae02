"""Unit tests for PortAllocator."""

import errno
import socket
import threading
from unittest.mock import Mock

import pytest

from ftpmon.net.ports import PortAllocator, is_address_in_use


def in_use_error() -> OSError:
    return OSError(errno.EADDRINUSE, "Address already in use")


class TestNextPort:
    """Tests for the round-robin cursor."""

    def test_cycles_through_range(self):
        """Test candidates cycle first..last and wrap around."""
        allocator = PortAllocator(5000, 5002)
        ports = [allocator.next_port() for _ in range(7)]
        assert ports == [5000, 5001, 5002, 5000, 5001, 5002, 5000]

    def test_descending_range(self):
        """Test a range with first > last counts down."""
        allocator = PortAllocator(5002, 5000)
        assert [allocator.next_port() for _ in range(4)] == [5002, 5001, 5000, 5002]

    def test_concurrent_draws_are_unique(self):
        """Test concurrent callers never receive the same candidate."""
        allocator = PortAllocator(5000, 5999)
        drawn = []
        lock = threading.Lock()

        def draw():
            ports = [allocator.next_port() for _ in range(100)]
            with lock:
                drawn.extend(ports)

        threads = [threading.Thread(target=draw) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert sorted(drawn) == list(range(5000, 6000))

    def test_single_port(self):
        allocator = PortAllocator(5000, 5000)
        assert [allocator.next_port() for _ in range(3)] == [5000, 5000, 5000]

    def test_size(self):
        assert PortAllocator(5000, 5002).size == 3
        assert PortAllocator(5002, 5000).size == 3


class TestAllocate:
    """Tests for allocate with a mocked bind."""

    def test_returns_bind_result(self):
        """Test the first successful bind result is returned."""
        bind = Mock(return_value="listener")
        allocator = PortAllocator(5000, 5002)

        assert allocator.allocate(bind) == "listener"
        bind.assert_called_once_with(5000)

    def test_skips_port_in_use(self):
        """Test an occupied port is skipped without surfacing an error."""
        def bind(port):
            if port == 5001:
                raise in_use_error()
            return port

        allocator = PortAllocator(5000, 5002)
        assert [allocator.allocate(bind) for _ in range(4)] == [5000, 5002, 5000, 5002]

    def test_all_ports_in_use(self):
        """Test the last bind error propagates after trying every port once."""
        bind = Mock(side_effect=in_use_error())
        allocator = PortAllocator(5000, 5002)

        with pytest.raises(OSError) as exc_info:
            allocator.allocate(bind)

        assert exc_info.value.errno == errno.EADDRINUSE
        assert [c.args[0] for c in bind.call_args_list] == [5000, 5001, 5002]

    def test_other_errors_propagate(self):
        """Test errors other than address-in-use are not retried."""
        bind = Mock(side_effect=OSError(errno.EACCES, "Permission denied"))
        allocator = PortAllocator(5000, 5002)

        with pytest.raises(OSError) as exc_info:
            allocator.allocate(bind)

        assert exc_info.value.errno == errno.EACCES
        bind.assert_called_once_with(5000)

    def test_ephemeral_range(self):
        """Test the (0, 0) range binds port 0 once."""
        bind = Mock(side_effect=in_use_error())
        allocator = PortAllocator()

        assert allocator.is_ephemeral
        with pytest.raises(OSError):
            allocator.allocate(bind)
        bind.assert_called_once_with(0)


class TestSetRange:
    """Tests for set_range."""

    def test_set_range_before_use(self):
        allocator = PortAllocator()
        allocator.set_range(6000, 6001)
        assert (allocator.first, allocator.last) == (6000, 6001)
        assert allocator.next_port() == 6000

    def test_set_range_after_allocation(self):
        """Test the range is frozen once a port was handed out."""
        allocator = PortAllocator(5000, 5002)
        allocator.allocate(lambda port: port)

        with pytest.raises(RuntimeError):
            allocator.set_range(6000, 6002)

    def test_set_range_after_ephemeral_allocation(self):
        allocator = PortAllocator()
        allocator.allocate(lambda port: port)

        with pytest.raises(RuntimeError):
            allocator.set_range(6000, 6002)


class TestOpenListener:
    """Tests for open_listener with real sockets."""

    def test_ephemeral_listener(self):
        """Test an ephemeral listener is bound and listening."""
        allocator = PortAllocator()
        with allocator.open_listener("127.0.0.1") as listener:
            host, port = listener.getsockname()
            assert host == "127.0.0.1"
            assert port > 0

            with socket.create_connection((host, port), timeout=2):
                pass

    def test_skips_occupied_port(self, free_port):
        """Test a port held by another socket is skipped."""
        with socket.socket() as blocker:
            blocker.bind(("127.0.0.1", free_port))
            blocker.listen(1)

            allocator = PortAllocator(free_port, free_port + 1)
            try:
                listener = allocator.open_listener("127.0.0.1")
            except OSError:
                pytest.skip("Neighbouring port is also in use")
            with listener:
                assert listener.getsockname()[1] == free_port + 1


def test_is_address_in_use():
    assert is_address_in_use(in_use_error())
    assert not is_address_in_use(OSError(errno.EACCES, "Permission denied"))
