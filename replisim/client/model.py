"""Wire models for the JSON-over-websocket puppet bridge.

Every request carries a unique ``u`` identifier; every frame the bridge sends
back echoes it. A ``source`` request is answered by any number of frames with
a ``result`` followed by one frame with ``end`` set.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field


class BridgeError(BaseModel):
    """Structured error reported by the bridge."""

    name: str = Field(default="Error", description="Error class reported by the peer.")
    message: str = Field(description="A human-readable error message.")


class BridgeRequest(BaseModel):
    role: Literal["request"] = "request"
    u: str = Field(description="A unique identifier for this request.")
    method: str = Field(description="Dotted RPC method name, e.g. conn.connect.")
    args: tuple[Any, ...] = Field(
        default_factory=tuple, description="Positional arguments for the call."
    )
    kind: Literal["async", "source"] = Field(
        default="async",
        description="async for request/response calls, source for streams.",
    )
    caps: str | None = Field(
        default=None, description="Network capability key the session expects."
    )


class BridgeResponse(BaseModel):
    role: Literal["response"] = "response"
    u: str = Field(
        description="The unique identifier of the request this is responding to."
    )
    result: Any = Field(default=None, description="Call result or stream item.")
    error: BridgeError | None = Field(default=None)
    end: bool = Field(
        default=False, description="Set on the final frame of a stream."
    )


class BridgeClose(BaseModel):
    """Asks the bridge to end a stream early."""

    role: Literal["close"] = "close"
    u: str
