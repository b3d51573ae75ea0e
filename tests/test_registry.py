"""Tests for telerpc.rpc._registry: server error names to exception types."""

from __future__ import annotations

import pytest

from telerpc.rpc import ExceptionRegistry, RemoteFault, RpcError


class NotFound(RpcError):
    """Registered RpcError subclass."""


class TestExceptionRegistry:
    """Tests for ExceptionRegistry."""

    def test_unknown_fault_is_plain_rpc_error(self) -> None:
        """Unregistered faults carry the raw service, name and message."""
        exc = ExceptionRegistry().build("Sensors", "Overheat", "too hot", "trace")
        assert type(exc) is RpcError
        assert str(exc) == "too hot"
        assert exc.service == "Sensors"
        assert exc.error_type == "Overheat"
        assert exc.remote_traceback == "trace"

    def test_registered_factory_used(self) -> None:
        """Registered names build the registered type with its fields filled in."""
        registry = ExceptionRegistry()
        registry.register("Sensors", "NotFound", NotFound)
        exc = registry.build("Sensors", "NotFound", "no sensor 4")
        assert isinstance(exc, NotFound)
        assert str(exc) == "no sensor 4"
        assert exc.service == "Sensors"
        assert exc.error_type == "NotFound"

    def test_name_scoped_by_service(self) -> None:
        """The same error name in another service is not matched."""
        registry = ExceptionRegistry()
        registry.register("Sensors", "NotFound", NotFound)
        assert type(registry.build("Other", "NotFound", "x")) is RpcError

    def test_non_rpc_factory(self) -> None:
        """Factories may build any exception type."""
        registry = ExceptionRegistry()
        registry.register("Sensors", "KeyError", KeyError)
        exc = registry.build("Sensors", "KeyError", "k")
        assert isinstance(exc, KeyError)

    def test_register_all_and_lookup(self) -> None:
        """register_all maps every entry under one service."""
        registry = ExceptionRegistry()
        registry.register_all("Sensors", {"NotFound": NotFound, "Boom": RuntimeError})
        assert len(registry) == 2
        assert ("Sensors", "Boom") in registry
        assert registry.lookup("Sensors", "NotFound") is NotFound
        assert registry.lookup("Sensors", "Missing") is None

    def test_later_registration_replaces(self) -> None:
        """Registering a name again replaces the factory."""
        registry = ExceptionRegistry()
        registry.register("S", "E", RuntimeError)
        registry.register("S", "E", NotFound)
        assert registry.lookup("S", "E") is NotFound

    def test_build_fault_and_raise_for(self) -> None:
        """Faults decoded from the wire raise their registered type."""
        registry = ExceptionRegistry()
        registry.register("Sensors", "NotFound", NotFound)
        exc = registry.build_fault(RemoteFault("Sensors", "NotFound", "gone", "tb"))
        assert isinstance(exc, NotFound)
        assert exc.remote_traceback == "tb"
        with pytest.raises(NotFound, match="gone"):
            registry.raise_for("Sensors", "NotFound", "gone")
