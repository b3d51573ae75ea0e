"""Tests for telerpc.service: Protocol introspection and typed proxies."""

from __future__ import annotations

from typing import Protocol

import pyarrow as pa
import pytest

from telerpc import (
    Client,
    Int32,
    ProcedureCall,
    RpcServer,
    ServiceProxy,
    decode,
    encode,
    procedure,
    procedures,
    serve_pipe,
)
from telerpc.encoding import EncodingError
from telerpc.service import describe_procedure
from tests.fixture_service import FixtureService, Mode, Reading, Vessel

# ---------------------------------------------------------------------------
# procedures()
# ---------------------------------------------------------------------------


class Naming(Protocol):
    """Protocol exercising name derivation."""

    def get_ut(self) -> float: ...

    @procedure("Vessel_get_Name")
    def vessel_name(self, vessel: Vessel) -> str: ...

    def set_throttle(self, value: float, hold: bool = False) -> None:
        """Set the throttle."""
        ...

    def _private(self) -> None: ...


class VarArgs(Protocol):
    """Protocol with an unsupported signature."""

    def spread(self, *values: int) -> None: ...


class Unannotated(Protocol):
    """Protocol with a missing annotation."""

    def loose(self, value) -> None: ...  # type: ignore[no-untyped-def]


class TestProcedures:
    """Tests for procedures()."""

    def test_pascal_case_names(self) -> None:
        """Method names map to PascalCase procedure names by default."""
        infos = procedures(Naming)
        assert infos["get_ut"].procedure == "GetUt"
        assert infos["set_throttle"].procedure == "SetThrottle"

    def test_explicit_name(self) -> None:
        """@procedure overrides the remote name."""
        assert procedures(Naming)["vessel_name"].procedure == "Vessel_get_Name"

    def test_private_methods_skipped(self) -> None:
        """Underscore-prefixed methods are not procedures."""
        assert set(procedures(Naming)) == {"get_ut", "vessel_name", "set_throttle"}

    def test_signature_details(self) -> None:
        """Parameter types, defaults, return and docs are recorded."""
        info = procedures(Naming)["set_throttle"]
        assert list(info.param_types) == ["value", "hold"]
        assert info.param_defaults == {"hold": False}
        assert not info.has_return
        assert info.doc == "Set the throttle."
        assert "self" not in info.signature.parameters

    def test_cached(self) -> None:
        """Introspection runs once per Protocol."""
        assert procedures(Naming) is procedures(Naming)

    def test_var_args_rejected(self) -> None:
        """*args cannot travel positionally."""
        with pytest.raises(TypeError, match=r"'values' is \*args"):
            procedures(VarArgs)

    def test_missing_annotation_rejected(self) -> None:
        """Every parameter needs a type annotation."""
        with pytest.raises(TypeError, match="'value' has no type annotation"):
            procedures(Unannotated)


# ---------------------------------------------------------------------------
# ServiceProxy
# ---------------------------------------------------------------------------


class TestServiceProxy:
    """Calls through a typed proxy."""

    def test_scalar_calls(self, fixture: ServiceProxy) -> None:
        """Arguments and results are encoded by their declared types."""
        assert fixture.echo("hello") == "hello"
        assert fixture.add(2, 3) == 5
        assert fixture.scale(1.5) == 3.0
        assert fixture.scale(1.5, factor=4.0) == 6.0

    def test_no_return_gives_none(self, fixture: ServiceProxy) -> None:
        """Procedures without a return value return None."""
        assert fixture.increment(5) is None
        assert fixture.get_counter() == 5

    def test_structured_values(self, fixture: ServiceProxy) -> None:
        """Collections, enums, optionals and messages cross the wire."""
        assert fixture.sum_all([1, 2, 3, 4]) == 10
        assert fixture.pair("a", 2) == ("a", 2)
        assert fixture.lookup({"x": 1, "y": 2}, "y") == 2
        assert fixture.lookup({"x": 1}, "z") is None
        assert fixture.set_mode(Mode.DOCKED) is Mode.IDLE
        assert fixture.set_mode(Mode.ACTIVE) is Mode.DOCKED
        assert fixture.make_reading("temp", 21.5) == Reading("temp", 21.5, ["fixture"])

    def test_out_of_range_argument(self, fixture: ServiceProxy) -> None:
        """Values outside the declared type fail before anything is sent."""
        with pytest.raises(EncodingError):
            fixture.add(2**40, 1)

    def test_none_for_required_argument(self, fixture: ServiceProxy) -> None:
        """None is rejected for non-optional parameters."""
        with pytest.raises(TypeError, match="'value' must not be None"):
            fixture.echo(None)

    def test_bad_signature(self, fixture: ServiceProxy) -> None:
        """Arguments are bound against the Protocol signature."""
        with pytest.raises(TypeError):
            fixture.add(1)

    def test_unknown_attribute(self, fixture: ServiceProxy) -> None:
        """Names that are not procedures raise AttributeError."""
        with pytest.raises(AttributeError, match="no procedure 'launch'"):
            _ = fixture.launch

    def test_stream_of_no_return_procedure(self, fixture: ServiceProxy) -> None:
        """Procedures that return nothing cannot be streamed."""
        with pytest.raises(AttributeError, match="cannot be streamed"):
            _ = fixture.increment_stream

    def test_dir_lists_variants(self, fixture: ServiceProxy) -> None:
        """dir() shows each procedure with its _call and _stream forms."""
        names = dir(fixture)
        assert {"echo", "echo_call", "echo_stream"} <= set(names)

    def test_metadata(self, fixture: ServiceProxy, client: Client) -> None:
        """The proxy exposes its service name, connection and procedures."""
        assert fixture.service_name == "Fixture"
        assert fixture.client is client
        assert "echo" in fixture.procedures
        assert repr(fixture).startswith("<ServiceProxy Fixture")

    def test_service_name_override(self, client: Client) -> None:
        """An explicit service name wins over SERVICE_NAME."""
        assert ServiceProxy(client, FixtureService, service="Other").service_name == "Other"


class TestCallBuilding:
    """Building calls without performing I/O."""

    def test_call_matches_manual_encoding(self, fixture: ServiceProxy) -> None:
        """_call variants return the encoded ProcedureCall."""
        call = fixture.add_call(1, 2)
        assert call == ProcedureCall("Fixture", "Add", (encode(1, Int32), encode(2, Int32)))

    def test_defaults_are_encoded(self, fixture: ServiceProxy) -> None:
        """Defaulted parameters are always sent."""
        assert len(fixture.increment_call().arguments) == 1

    def test_build_call_on_closed_client(self, server: RpcServer) -> None:
        """Building a call needs no open connection."""
        with serve_pipe(server) as conn:
            proxy = ServiceProxy(conn, FixtureService)
        assert conn.closed
        call = proxy.echo_call("later")
        assert call.procedure == "Echo"
        assert call == conn.build_call("Fixture", "Echo", [encode("later", str)])

    def test_identical_calls_equal(self, fixture: ServiceProxy) -> None:
        """Identical arguments produce identical calls."""
        assert fixture.lookup_call({"b": 2, "a": 1}, "a") == fixture.lookup_call({"a": 1, "b": 2}, "a")


# ---------------------------------------------------------------------------
# Service descriptions
# ---------------------------------------------------------------------------


class TestServiceDescriptions:
    """Descriptions built from Protocols and fetched with KRPC.GetServices."""

    def test_describe_procedure(self) -> None:
        """Parameters, defaults, return type and docs are described."""
        description = describe_procedure(procedures(Naming)["set_throttle"])
        assert description.name == "SetThrottle"
        assert description.parameters == ("value", "hold")
        assert description.param_types == ("float", "bool")
        assert description.params_schema.types == [pa.float64(), pa.bool_()]
        assert not description.has_return
        assert description.return_hint is None
        assert decode(description.param_defaults["hold"], bool) is False
        assert description.documentation == "Set the throttle."

    def test_remote_object_parameter(self) -> None:
        """Remote objects are described by their uint64 ids."""
        description = describe_procedure(procedures(Naming)["vessel_name"])
        assert description.params_schema.field("vessel").type == pa.uint64()
        assert description.result_schema.field("value").type == pa.string()
        assert description.return_type == "str"

    def test_get_services(self, client: Client) -> None:
        """Every hosted service is listed with its procedures."""
        services = client.krpc.get_services()
        assert [s.name for s in services.services] == ["KRPC", "Fixture"]
        assert "GetServices" in {p.name for p in services.service("KRPC").procedures}
        hosted = services.service("Fixture")
        assert hosted.documentation == "Procedures exercised by the integration tests."
        add = hosted.procedure("Add")
        assert add.parameters == ("a", "b")
        assert add.param_types == ("Int32", "Int32")
        assert add.return_type == "Int32"

    def test_unknown_names(self, client: Client) -> None:
        """Looking up an unknown service or procedure raises KeyError."""
        services = client.krpc.get_services()
        with pytest.raises(KeyError):
            services.service("Nope")
        with pytest.raises(KeyError):
            services.service("Fixture").procedure("Nope")

    def test_call_built_from_description(self, client: Client, fixture: ServiceProxy) -> None:
        """A call built from the fetched description matches the proxy's and runs."""
        add = client.krpc.get_services().service("Fixture").procedure("Add")
        args = [client.encode_argument(v, hint) for v, hint in zip((2, 3), add.param_hints, strict=True)]
        call = client.build_call("Fixture", add.name, args)
        assert call == fixture.add_call(2, 3)
        assert decode(client.invoke_call(call), add.return_hint) == 5

    def test_described_default_fills_argument(self, client: Client) -> None:
        """Encoded defaults can be sent in place of omitted arguments."""
        scale = client.krpc.get_services().service("Fixture").procedure("Scale")
        args = [client.encode_argument(1.5, scale.param_hints[0]), scale.param_defaults["factor"]]
        assert decode(client.invoke("Fixture", "Scale", args), scale.return_hint) == 3.0
