"""Tests for object kind specs and the HTTP-backed object adapter."""

import pytest

from ..adapters import (
    OBJECT_KINDS,
    AdtObjectAdapter,
    activate_objects,
    check_transport_request,
    get_kind_spec,
    get_object_adapter,
)
from ..errors import AdtError, classify
from ..types import CheckResult, ErrorKind, ObjectDescriptor, SessionState
from .helpers import LOCK_HANDLE, check_report_xml, exception_xml, lock_xml


@pytest.fixture
def session():
    return SessionState(session_id="s1", csrf_token="TOKEN")


@pytest.fixture
def class_adapter(connection):
    return get_object_adapter("class", connection)


class TestKindSpecs:
    def test_lookup_is_case_insensitive(self):
        assert get_kind_spec(" Class ").adt_type == "CLAS/OC"

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unsupported object type: widget"):
            get_kind_spec("widget")

    def test_every_kind_is_editable(self):
        for spec in OBJECT_KINDS.values():
            assert spec.source_path or spec.content_type, spec.kind

    def test_uris(self):
        spec = get_kind_spec("class")
        descriptor = ObjectDescriptor(kind="class", name="zcl_test")
        assert spec.object_uri(descriptor) == "/sap/bc/adt/oo/classes/zcl_test"
        assert spec.content_uri(descriptor) == "/sap/bc/adt/oo/classes/zcl_test/source/main"

    def test_function_module_needs_parent(self):
        spec = get_kind_spec("function_module")
        descriptor = ObjectDescriptor(kind="function_module", name="Z_FM", parent_name="zfg")
        assert spec.object_uri(descriptor) == "/sap/bc/adt/functions/groups/zfg/fmodules/z_fm"

        with pytest.raises(AdtError) as exc_info:
            spec.object_uri(ObjectDescriptor(kind="function_module", name="Z_FM"))
        assert exc_info.value.kind == ErrorKind.VALIDATION_FAILED


class TestTransportRequest:
    def test_local_package_needs_none(self):
        check_transport_request(ObjectDescriptor(kind="class", name="ZCL_X", package_name="$TMP"))

    def test_transportable_package_with_request(self):
        check_transport_request(
            ObjectDescriptor(
                kind="class", name="ZCL_X", package_name="ZPKG", transport_request="DEVK900001"
            )
        )

    def test_transportable_package_without_request(self):
        with pytest.raises(AdtError) as exc_info:
            check_transport_request(
                ObjectDescriptor(kind="class", name="ZCL_X", package_name="zpkg")
            )
        assert exc_info.value.kind == ErrorKind.TRANSPORT_REQUEST_REQUIRED


class TestAdtObjectAdapter:
    @pytest.mark.asyncio
    async def test_validate(self, class_adapter, backend, descriptor, session):
        await class_adapter.validate(descriptor, session)

        request = backend.requests_to("/sap/bc/adt/oo/validation/objectname")[0]
        assert request["method"] == "POST"
        assert request["params"]["objtype"] == "CLAS/OC"
        assert request["params"]["objname"] == "ZCL_TEST"
        assert request["params"]["packagename"] == "$TMP"

    @pytest.mark.asyncio
    async def test_validate_rejected(self, class_adapter, backend, descriptor, session):
        backend.on(
            "POST",
            "/validation",
            body=exception_xml("Class ZCL_TEST already exists", "ExceptionResourceAlreadyExists"),
        )

        with pytest.raises(AdtError) as exc_info:
            await class_adapter.validate(descriptor, session)

        assert classify(exc_info.value) == ErrorKind.ALREADY_EXISTS

    @pytest.mark.asyncio
    async def test_create_posts_document(self, class_adapter, backend, session):
        descriptor = ObjectDescriptor(
            kind="class",
            name="ZCL_TEST",
            package_name="ZPKG",
            transport_request="DEVK900001",
            description="Test class",
        )
        backend.on("POST", "/sap/bc/adt/oo/classes", status=201)

        result = await class_adapter.create(descriptor, session)

        assert result.status_code == 201
        request = backend.requests[0]
        assert request["path"] == "/sap/bc/adt/oo/classes"
        assert request["params"] == {"corrNr": "DEVK900001"}
        assert 'adtcore:name="ZCL_TEST"' in request["data"]
        assert 'adtcore:responsible="DEVELOPER"' in request["data"]

    @pytest.mark.asyncio
    async def test_lock_returns_handle(self, class_adapter, backend, descriptor, session):
        backend.on("POST", "/sap/bc/adt/oo/classes/zcl_test", action="LOCK", body=lock_xml())

        result = await class_adapter.lock(descriptor, session)

        assert result.data == LOCK_HANDLE
        assert backend.requests[0]["params"] == {"_action": "LOCK", "accessMode": "MODIFY"}

    @pytest.mark.asyncio
    async def test_lock_without_handle(self, class_adapter, descriptor, session):
        with pytest.raises(AdtError, match="Lock handle not found"):
            await class_adapter.lock(descriptor, session)

    @pytest.mark.asyncio
    async def test_lock_conflict(self, class_adapter, backend, descriptor, session):
        backend.on(
            "POST",
            "/zcl_test",
            action="LOCK",
            status=403,
            body=exception_xml("Object ZCL_TEST is currently editing by OTHER"),
        )

        with pytest.raises(AdtError) as exc_info:
            await class_adapter.lock(descriptor, session)

        assert classify(exc_info.value) == ErrorKind.LOCK_CONFLICT

    @pytest.mark.asyncio
    async def test_check_sends_proposed_source(self, class_adapter, backend, descriptor, session):
        backend.on(
            "POST",
            "/sap/bc/adt/checkruns",
            body=check_report_xml([("E", "Unknown statement", 3)]),
        )

        result = await class_adapter.check(descriptor, session, content="CLASS zcl_test.")

        assert isinstance(result.data, CheckResult)
        assert result.data.passed is False
        request = backend.requests[0]
        assert request["params"] == {"reporters": "abapCheckRun"}
        assert "chkrun:artifacts" in request["data"]
        assert "/sap/bc/adt/oo/classes/zcl_test/source/main" in request["data"]

    @pytest.mark.asyncio
    async def test_update_puts_source_under_lock(self, class_adapter, backend, descriptor, session):
        await class_adapter.update(descriptor, "CLASS zcl_test.", LOCK_HANDLE, session)

        request = backend.requests[0]
        assert request["method"] == "PUT"
        assert request["path"] == "/sap/bc/adt/oo/classes/zcl_test/source/main"
        assert request["params"] == {"lockHandle": LOCK_HANDLE}
        assert request["data"] == "CLASS zcl_test."
        assert request["headers"]["Content-Type"] == "text/plain; charset=utf-8"

    @pytest.mark.asyncio
    async def test_update_metadata_kind(self, connection, backend, session):
        adapter = get_object_adapter("domain", connection)
        descriptor = ObjectDescriptor(kind="domain", name="ZDOMAIN")

        await adapter.update(descriptor, "<doma:domain/>", LOCK_HANDLE, session)

        request = backend.requests[0]
        assert request["path"] == "/sap/bc/adt/ddic/domains/zdomain"
        assert request["headers"]["Content-Type"] == "application/vnd.sap.adt.domains.v2+xml"

    @pytest.mark.asyncio
    async def test_unlock(self, class_adapter, backend, descriptor, session):
        await class_adapter.unlock(descriptor, LOCK_HANDLE, session)

        assert backend.requests[0]["params"] == {"_action": "UNLOCK", "lockHandle": LOCK_HANDLE}

    @pytest.mark.asyncio
    async def test_activate(self, class_adapter, backend, descriptor, session):
        result = await class_adapter.activate(descriptor, session)

        assert result.data.activated is True
        request = backend.requests_to("/sap/bc/adt/activation")[0]
        assert request["params"]["method"] == "activate"
        assert 'adtcore:uri="/sap/bc/adt/oo/classes/zcl_test"' in request["data"]

    @pytest.mark.asyncio
    async def test_delete_not_found(self, class_adapter, backend, descriptor, session):
        backend.on("POST", "/sap/bc/adt/deletion/delete", status=404, body="Not Found")

        with pytest.raises(AdtError) as exc_info:
            await class_adapter.delete(descriptor, session)

        assert classify(exc_info.value) == ErrorKind.NOT_FOUND

    def test_adapter_kind(self, connection):
        adapter = get_object_adapter("PROGRAM", connection)
        assert isinstance(adapter, AdtObjectAdapter)
        assert adapter.kind == "program"


class TestActivateObjects:
    @pytest.mark.asyncio
    async def test_references_every_object(self, connection, backend, session):
        group = [
            ObjectDescriptor(kind="view", name="ZI_TRAVEL"),
            ObjectDescriptor(kind="metadata_extension", name="ZI_TRAVEL"),
        ]

        result = await activate_objects(connection, group, session)

        assert result.data.activated is True
        requests = backend.requests_to("/sap/bc/adt/activation")
        assert len(requests) == 1
        body = requests[0]["data"]
        assert body.count("adtcore:objectReference ") == 2
        assert 'adtcore:uri="/sap/bc/adt/ddic/ddl/sources/zi_travel"' in body
        assert 'adtcore:uri="/sap/bc/adt/ddic/ddlx/sources/zi_travel"' in body
