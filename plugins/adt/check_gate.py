import logging
from typing import Optional

from .adapters import ObjectAdapter
from .errors import AdtError, is_duplicate_check
from .session import SessionContext
from .types import CheckResult, ObjectDescriptor

logger = logging.getLogger(__name__)


class CheckGate:
    """Runs syntax checks and absorbs duplicate-check rejections.

    When the backend refuses a check because an identical one already ran for
    the same object and version in this session, the result is reported as
    passed and benign.
    """

    def __init__(self, adapter: ObjectAdapter):
        self.adapter = adapter

    async def check(
        self,
        descriptor: ObjectDescriptor,
        session_ctx: SessionContext,
        proposed_content: Optional[str] = None,
        version: str = "inactive",
    ) -> CheckResult:
        """Check proposed content, or the persisted version when none is given

        Raises:
            AdtError: For check failures other than duplicate checks
        """
        target = "proposed content" if proposed_content is not None else f"{version} version"
        logger.debug(f"Checking {target} of {descriptor.label}")

        try:
            result = await self.adapter.check(
                descriptor,
                session_ctx.current,
                content=proposed_content,
                version=version,
            )
        except AdtError as e:
            session_ctx.advance(e.session_state)
            if is_duplicate_check(e):
                logger.info(f"Check of {descriptor.label} already ran: {e.message}")
                return CheckResult.benign_result(e.message)
            raise
        session_ctx.advance(result.session)

        check: CheckResult = result.data
        if (
            not check.passed
            and check.errors
            and all(is_duplicate_check(message.text) for message in check.errors)
        ):
            logger.info(f"Check of {descriptor.label} already ran in this session")
            return CheckResult.benign_result(check.errors[0].text)

        if not check.passed:
            logger.debug(f"Check of {descriptor.label} failed: {check.summary()}")
        return check
