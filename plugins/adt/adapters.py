"""Object adapters: one uniform set of lifecycle operations per object kind.

Every kind goes through the same ADT endpoints (lock, unlock, check run,
activation, deletion); what differs is captured by an ``ObjectKindSpec`` entry in
``OBJECT_KINDS``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

from pydantic import BaseModel, ConfigDict

from .adt_rest_utils import (
    ACTIVATION_PATH,
    CHECKRUN_PATH,
    DELETION_PATH,
    build_check_run_xml,
    build_creation_xml,
    build_deletion_xml,
    build_object_references_xml,
    encode_object_name,
    parse_activation_response,
    parse_check_run_report,
    parse_lock_handle,
    parse_validation_response,
)
from .errors import AdtError
from .session import AdtConnection
from .types import (
    AdapterResult,
    ErrorKind,
    ObjectDescriptor,
    SessionState,
    short_handle,
)

logger = logging.getLogger(__name__)

LOCK_ACCEPT = (
    "application/vnd.sap.as+xml;charset=UTF-8;dataname=com.sap.adt.lock.result;q=0.8, "
    "application/vnd.sap.as+xml;charset=UTF-8;dataname=com.sap.adt.lock.result2;q=0.9"
)
SOURCE_CONTENT_TYPE = "text/plain; charset=utf-8"


class ObjectKindSpec(BaseModel):
    """What distinguishes one object kind on the wire"""

    model_config = ConfigDict(frozen=True)

    kind: str
    adt_type: str
    collection: str
    root_element: str
    namespace: str
    validation_path: str
    # Source-based kinds are edited through a plain text sub-resource
    source_path: Optional[str] = None
    # Metadata kinds are edited as a whole XML document of this type
    content_type: Optional[str] = None
    needs_parent: bool = False

    def collection_uri(self, descriptor: ObjectDescriptor) -> str:
        if self.needs_parent:
            if not descriptor.parent_name:
                raise AdtError(
                    f"{self.kind} objects need parent_name",
                    kind=ErrorKind.VALIDATION_FAILED,
                )
            return self.collection.format(parent=encode_object_name(descriptor.parent_name))
        return self.collection

    def object_uri(self, descriptor: ObjectDescriptor) -> str:
        return f"{self.collection_uri(descriptor)}/{encode_object_name(descriptor.name)}"

    def content_uri(self, descriptor: ObjectDescriptor) -> str:
        return f"{self.object_uri(descriptor)}{self.source_path or ''}"


def _spec(kind, adt_type, collection, root_element, namespace, validation_path, **kwargs):
    return ObjectKindSpec(
        kind=kind,
        adt_type=adt_type,
        collection=collection,
        root_element=root_element,
        namespace=namespace,
        validation_path=validation_path,
        **kwargs,
    )


OBJECT_KINDS: Dict[str, ObjectKindSpec] = {
    spec.kind: spec
    for spec in [
        _spec(
            "class", "CLAS/OC", "/sap/bc/adt/oo/classes", "class:abapClass",
            "http://www.sap.com/adt/oo/classes", "/sap/bc/adt/oo/validation/objectname",
            source_path="/source/main",
        ),
        _spec(
            "interface", "INTF/OI", "/sap/bc/adt/oo/interfaces", "intf:abapInterface",
            "http://www.sap.com/adt/oo/interfaces", "/sap/bc/adt/oo/validation/objectname",
            source_path="/source/main",
        ),
        _spec(
            "program", "PROG/P", "/sap/bc/adt/programs/programs", "program:abapProgram",
            "http://www.sap.com/adt/programs/programs", "/sap/bc/adt/programs/validation",
            source_path="/source/main",
        ),
        _spec(
            "include", "PROG/I", "/sap/bc/adt/programs/includes", "include:abapInclude",
            "http://www.sap.com/adt/programs/includes", "/sap/bc/adt/includes/validation",
            source_path="/source/main",
        ),
        _spec(
            "function_group", "FUGR/F", "/sap/bc/adt/functions/groups", "group:abapFunctionGroup",
            "http://www.sap.com/adt/functions/groups", "/sap/bc/adt/functions/validation",
        ),
        _spec(
            "function_module", "FUGR/FF", "/sap/bc/adt/functions/groups/{parent}/fmodules",
            "fmodule:abapFunctionModule", "http://www.sap.com/adt/functions/fmodules",
            "/sap/bc/adt/functions/validation",
            source_path="/source/main", needs_parent=True,
        ),
        _spec(
            "table", "TABL/DT", "/sap/bc/adt/ddic/tables", "blue:blueSource",
            "http://www.sap.com/wbobj/blue", "/sap/bc/adt/ddic/tables/validation",
            source_path="/source/main",
        ),
        _spec(
            "structure", "TABL/DS", "/sap/bc/adt/ddic/structures", "blue:blueSource",
            "http://www.sap.com/wbobj/blue", "/sap/bc/adt/ddic/structures/validation",
            source_path="/source/main",
        ),
        _spec(
            "view", "DDLS/DF", "/sap/bc/adt/ddic/ddl/sources", "ddl:ddlSource",
            "http://www.sap.com/adt/ddic/ddlsources", "/sap/bc/adt/ddic/ddl/validation",
            source_path="/source/main",
        ),
        _spec(
            "domain", "DOMA/DD", "/sap/bc/adt/ddic/domains", "doma:domain",
            "http://www.sap.com/dictionary/domain", "/sap/bc/adt/ddic/domains/validation",
            content_type="application/vnd.sap.adt.domains.v2+xml",
        ),
        _spec(
            "data_element", "DTEL/DE", "/sap/bc/adt/ddic/dataelements", "blue:wbobj",
            "http://www.sap.com/wbobj/dictionary/dtel", "/sap/bc/adt/ddic/dataelements/validation",
            content_type="application/vnd.sap.adt.dataelements.v2+xml",
        ),
        _spec(
            "behavior_definition", "BDEF/BDO", "/sap/bc/adt/bo/behaviordefinitions",
            "blue:blueSource", "http://www.sap.com/wbobj/blue",
            "/sap/bc/adt/bo/behaviordefinitions/validation",
            source_path="/source/main",
        ),
        _spec(
            "behavior_implementation", "CLAS/OC", "/sap/bc/adt/oo/classes", "class:abapClass",
            "http://www.sap.com/adt/oo/classes", "/sap/bc/adt/oo/validation/objectname",
            source_path="/includes/implementations",
        ),
        _spec(
            "metadata_extension", "DDLX/EX", "/sap/bc/adt/ddic/ddlx/sources",
            "ddlxsources:ddlxSource", "http://www.sap.com/adt/ddic/ddlxsources",
            "/sap/bc/adt/ddic/ddlx/sources/validation",
            source_path="/source/main",
        ),
        _spec(
            "service_definition", "SRVD/SRV", "/sap/bc/adt/ddic/srvd/sources",
            "srvd:srvdSource", "http://www.sap.com/adt/ddic/srvdsources",
            "/sap/bc/adt/ddic/srvd/sources/validation",
            source_path="/source/main",
        ),
        _spec(
            "package", "DEVC/K", "/sap/bc/adt/packages", "pak:package",
            "http://www.sap.com/adt/packages", "/sap/bc/adt/packages/validation",
            content_type="application/vnd.sap.adt.packages.v1+xml",
        ),
    ]
}


def get_kind_spec(kind: str) -> ObjectKindSpec:
    """Look up an object kind

    Raises:
        ValueError: If the kind is not supported
    """
    spec = OBJECT_KINDS.get(kind.strip().lower())
    if spec is None:
        raise ValueError(
            f"Unsupported object type: {kind}. Supported types: {', '.join(OBJECT_KINDS)}"
        )
    return spec


def check_transport_request(descriptor: ObjectDescriptor) -> None:
    """Refuse to touch a transportable package without a transport request

    Packages starting with ``$`` are local and need none.
    """
    package = descriptor.package_name
    if package and not package.startswith("$") and not descriptor.transport_request:
        raise AdtError(
            f"Transport request is required for {descriptor.label} in non-local package {package}",
            kind=ErrorKind.TRANSPORT_REQUEST_REQUIRED,
        )


class ObjectAdapter(ABC):
    """Uniform lifecycle operations over one object kind.

    Every operation takes the current session and returns an ``AdapterResult``
    carrying the updated one. Failures raise ``AdtError`` with ``session_state``
    set to the latest session.
    """

    kind: str = ""

    @abstractmethod
    async def validate(
        self, descriptor: ObjectDescriptor, session: SessionState
    ) -> AdapterResult:
        pass

    @abstractmethod
    async def create(
        self, descriptor: ObjectDescriptor, session: SessionState
    ) -> AdapterResult:
        pass

    @abstractmethod
    async def lock(
        self, descriptor: ObjectDescriptor, session: SessionState
    ) -> AdapterResult:
        """Acquire the edit lock; ``data`` is the lock handle."""
        pass

    @abstractmethod
    async def check(
        self,
        descriptor: ObjectDescriptor,
        session: SessionState,
        content: Optional[str] = None,
        version: str = "inactive",
    ) -> AdapterResult:
        """Run a syntax check; ``data`` is a CheckResult."""
        pass

    @abstractmethod
    async def update(
        self,
        descriptor: ObjectDescriptor,
        content: str,
        lock_handle: str,
        session: SessionState,
    ) -> AdapterResult:
        pass

    @abstractmethod
    async def unlock(
        self, descriptor: ObjectDescriptor, lock_handle: str, session: SessionState
    ) -> AdapterResult:
        pass

    @abstractmethod
    async def activate(
        self, descriptor: ObjectDescriptor, session: SessionState
    ) -> AdapterResult:
        """Activate the inactive version; ``data`` is an ActivationResult."""
        pass

    @abstractmethod
    async def delete(
        self, descriptor: ObjectDescriptor, session: SessionState
    ) -> AdapterResult:
        pass


class AdtObjectAdapter(ObjectAdapter):
    """ObjectAdapter for every kind in OBJECT_KINDS, driven by its spec"""

    def __init__(self, spec: ObjectKindSpec, connection: AdtConnection):
        self.spec = spec
        self.kind = spec.kind
        self.connection = connection

    def _transport_params(self, descriptor: ObjectDescriptor) -> Dict[str, Any]:
        if descriptor.transport_request:
            return {"corrNr": descriptor.transport_request}
        return {}

    async def validate(self, descriptor, session):
        params = {
            "objtype": self.spec.adt_type,
            "objname": descriptor.name,
        }
        if descriptor.package_name:
            params["packagename"] = descriptor.package_name
        if descriptor.description:
            params["description"] = descriptor.description
        if descriptor.parent_name:
            params["fugrname"] = descriptor.parent_name

        result, session = await self.connection.call(
            "POST",
            self.spec.validation_path,
            session,
            params=params,
            accept="application/vnd.sap.as+xml",
        )
        report = parse_validation_response(result.get("data"))
        if not report.valid:
            raise AdtError(
                report.message or f"Validation of {descriptor.label} failed",
                status_code=result.get("status_code"),
                exception_type=report.exception_type,
                raw_response=result.get("raw_response"),
                session_state=session,
            )
        return AdapterResult(session=session, data=report, status_code=result.get("status_code"))

    async def create(self, descriptor, session):
        container_uri = None
        if self.spec.needs_parent:
            container_uri = self.spec.collection_uri(descriptor).rsplit("/", 1)[0]
        body = build_creation_xml(
            self.spec.root_element,
            self.spec.namespace,
            self.spec.adt_type,
            descriptor.name,
            descriptor.description or descriptor.name,
            descriptor.package_name,
            language=self.connection.config.language,
            responsible=(self.connection.config.user or "").upper() or None,
            container_uri=container_uri,
            container_name=descriptor.parent_name,
        )
        result, session = await self.connection.call(
            "POST",
            self.spec.collection_uri(descriptor),
            session,
            params=self._transport_params(descriptor),
            data=body,
            content_type=self.spec.content_type or "application/*",
        )
        logger.debug(f"Created {descriptor.label}")
        return AdapterResult(session=session, status_code=result.get("status_code"))

    async def lock(self, descriptor, session):
        result, session = await self.connection.call(
            "POST",
            self.spec.object_uri(descriptor),
            session,
            params={"_action": "LOCK", "accessMode": "MODIFY"},
            accept=LOCK_ACCEPT,
        )
        handle = parse_lock_handle(result.get("data"))
        if not handle:
            raise AdtError(
                f"Lock handle not found in lock response for {descriptor.label}",
                status_code=result.get("status_code"),
                raw_response=result.get("raw_response"),
                session_state=session,
            )
        return AdapterResult(session=session, data=handle, status_code=result.get("status_code"))

    async def check(self, descriptor, session, content=None, version="inactive"):
        object_uri = self.spec.object_uri(descriptor)
        body = build_check_run_xml(
            object_uri,
            version=version,
            content=content if self.spec.source_path else None,
            artifact_uri=self.spec.content_uri(descriptor),
        )
        result, session = await self.connection.call(
            "POST",
            CHECKRUN_PATH,
            session,
            params={"reporters": "abapCheckRun"},
            data=body,
            content_type="application/vnd.sap.adt.checkobjects+xml",
            accept="application/vnd.sap.adt.checkmessages+xml",
        )
        report = parse_check_run_report(result.get("data"))
        return AdapterResult(session=session, data=report, status_code=result.get("status_code"))

    async def update(self, descriptor, content, lock_handle, session):
        params = {"lockHandle": lock_handle}
        params.update(self._transport_params(descriptor))
        result, session = await self.connection.call(
            "PUT",
            self.spec.content_uri(descriptor),
            session,
            params=params,
            data=content,
            content_type=self.spec.content_type or SOURCE_CONTENT_TYPE,
        )
        logger.debug(
            f"Updated {descriptor.label} under lock {short_handle(lock_handle)}"
        )
        return AdapterResult(session=session, status_code=result.get("status_code"))

    async def unlock(self, descriptor, lock_handle, session):
        result, session = await self.connection.call(
            "POST",
            self.spec.object_uri(descriptor),
            session,
            params={"_action": "UNLOCK", "lockHandle": lock_handle},
        )
        return AdapterResult(session=session, status_code=result.get("status_code"))

    async def activate(self, descriptor, session):
        return await activate_objects(self.connection, [descriptor], session)

    async def delete(self, descriptor, session):
        body = build_deletion_xml(
            self.spec.object_uri(descriptor), descriptor.transport_request
        )
        result, session = await self.connection.call(
            "POST",
            DELETION_PATH,
            session,
            data=body,
            content_type="application/vnd.sap.adt.deletion.request.v1+xml",
            accept="application/vnd.sap.adt.deletion.response.v1+xml",
        )
        return AdapterResult(session=session, status_code=result.get("status_code"))


def get_object_adapter(kind: str, connection: AdtConnection) -> ObjectAdapter:
    """Build the adapter for an object kind

    Raises:
        ValueError: If the kind is not supported
    """
    return AdtObjectAdapter(get_kind_spec(kind), connection)


async def activate_objects(
    connection: AdtConnection,
    descriptors: List[ObjectDescriptor],
    session: SessionState,
) -> AdapterResult:
    """Activate several objects in one request; ``data`` is an ActivationResult.

    Objects that depend on each other (a table and its behavior definition, a
    view and its metadata extension) only activate cleanly together.
    """
    references = [
        (get_kind_spec(descriptor.kind).object_uri(descriptor), descriptor.name)
        for descriptor in descriptors
    ]
    result, session = await connection.call(
        "POST",
        ACTIVATION_PATH,
        session,
        params={"method": "activate", "preauditRequested": "true"},
        data=build_object_references_xml(references),
        content_type="application/vnd.sap.adt.activation+xml",
    )
    activation = parse_activation_response(result.get("data"))
    logger.debug(
        f"Activation of {', '.join(d.label for d in descriptors)}: "
        f"activated={activation.activated}"
    )
    return AdapterResult(
        session=session, data=activation, status_code=result.get("status_code")
    )
