from starlette.formparsers import MultiPartException
from starlette.types import Message, Receive


class BodyTooLarge(MultiPartException):
    """Request body grew past the configured upload ceiling.

    Subclasses MultiPartException so Starlette's multipart parser closes the
    spooled part files it already opened before the error propagates.
    """

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Request body exceeds the maximum upload size of {limit} bytes")


def limit_body(receive: Receive, max_size: int) -> Receive:
    """Wrap an ASGI receive callable so that more than max_size body bytes raise BodyTooLarge."""
    received = 0

    async def limited_receive() -> Message:
        nonlocal received
        message = await receive()
        if message["type"] == "http.request":
            received += len(message.get("body", b""))
            if received > max_size:
                raise BodyTooLarge(max_size)
        return message

    return limited_receive
