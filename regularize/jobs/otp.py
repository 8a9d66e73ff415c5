"""Hand-off of one-time passcodes from the API to a waiting registration."""
import asyncio
import logging
from typing import Dict

from regularize.errors import RegistrationError

logger = logging.getLogger(__name__)


class OtpMailbox:
    """
    One slot per registration awaiting its e-mailed passcode.

    The registration opens the slot and waits; the API delivers the code the
    operator read from the responsible party's inbox.
    """

    def __init__(self):
        self._waiting: Dict[str, asyncio.Future] = {}

    def is_waiting(self, registration_id: str) -> bool:
        future = self._waiting.get(registration_id)
        return future is not None and not future.done()

    def open(self, registration_id: str) -> None:
        """Start accepting a code for this registration."""
        # A slot already holding a delivered code stays until wait_for consumes it
        if registration_id in self._waiting:
            return
        self._waiting[registration_id] = asyncio.get_running_loop().create_future()

    def deliver(self, registration_id: str, code: str) -> bool:
        """Hand a code to the waiting registration. False when nobody is waiting."""
        future = self._waiting.get(registration_id)
        if future is None or future.done():
            return False
        future.set_result(code.strip())
        logger.info(f"OTP delivered for registration {registration_id}")
        return True

    def discard(self, registration_id: str) -> None:
        """Drop the slot; a code delivered afterwards is refused."""
        future = self._waiting.pop(registration_id, None)
        if future is not None and not future.done():
            future.cancel()

    async def wait_for(self, registration_id: str, timeout: float) -> str:
        """Wait for the code; raises RegistrationError on timeout."""
        self.open(registration_id)
        future = self._waiting[registration_id]
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RegistrationError("awaiting-otp", f"Código OTP não recebido em {timeout:.0f}s") from e
        finally:
            self._waiting.pop(registration_id, None)
