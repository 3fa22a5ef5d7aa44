import functools

import pytest

from wireguard.conn import (
    Bind,
    BindAlreadyOpenError,
    Endpoint,
    WrongEndpointTypeError,
    pretty_name,
)


def test_pretty_name():
    recv_func = lambda bufs, sizes, eps: 0  # noqa: E731
    assert pretty_name(recv_func) == "test_pretty_name"


def test_pretty_name_ipv4_suffix():
    def receive_ipv4(bufs, sizes, eps):
        return 0

    assert pretty_name(receive_ipv4) == "v4"


def test_pretty_name_ipv6_from_method_closure():
    class Holder:
        def make_receive_ipv6(self):
            return lambda bufs, sizes, eps: 0

    assert pretty_name(Holder().make_receive_ipv6()) == "v6"


def test_pretty_name_bound_method():
    class Holder:
        def receive_ipv4(self, bufs, sizes, eps):
            return 0

    assert pretty_name(Holder().receive_ipv4) == "v4"


def test_pretty_name_named_nested_function():
    def helper(bufs, sizes, eps):
        return 0

    assert pretty_name(helper) == "helper"


def test_pretty_name_falls_back_to_identity():
    fn = functools.partial(print, "x")
    assert pretty_name(fn) == hex(id(fn))


def test_abstract_bind_cannot_be_instantiated():
    with pytest.raises(TypeError):
        Bind()


def test_abstract_endpoint_cannot_be_instantiated():
    with pytest.raises(TypeError):
        Endpoint()


def test_partial_bind_subclass_cannot_be_instantiated():
    class PartialBind(Bind):
        def open(self, port):
            return [], port

        def close(self):
            pass

    with pytest.raises(TypeError):
        PartialBind()
    assert pretty_name(PartialBind.close) == "close"


def test_pretty_name_of_bind_subclass_receive_methods():
    class SizedBind(Bind):
        def open(self, port):
            return [self.receive_ipv4, self.receive_ipv6], port

        def close(self):
            pass

        def set_mark(self, mark):
            pass

        def send(self, bufs, endpoint):
            pass

        def parse_endpoint(self, s):
            raise WrongEndpointTypeError()

        def batch_size(self):
            return 7

        def receive_ipv4(self, bufs, sizes, eps):
            return 0

        def receive_ipv6(self, bufs, sizes, eps):
            return 0

    fns, port = SizedBind().open(51820)
    assert port == 51820
    assert [pretty_name(fn) for fn in fns] == ["v4", "v6"]


def test_error_messages():
    assert str(BindAlreadyOpenError()) == "bind is already open"
    assert str(WrongEndpointTypeError()) == (
        "endpoint type does not correspond with bind type"
    )