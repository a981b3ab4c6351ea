from dataclasses import dataclass, field
from typing import Mapping, Optional

from fastapi import Request, Response


@dataclass
class CookieJar:
    """Cookies of one request/response pair.

    Reads come from the inbound request. Writes are recorded in `outgoing`
    and, when a response is attached, set on it straight away.
    """

    incoming: Mapping[str, str]
    secure: bool = False
    response: Optional[Response] = None
    outgoing: dict[str, tuple[str, int]] = field(default_factory=dict)

    def get(self, name: str) -> Optional[str]:
        if name in self.outgoing:
            value, max_age = self.outgoing[name]
            return value if max_age > 0 else None
        return self.incoming.get(name) or None

    def set(self, name: str, value: str, max_age: int) -> None:
        self.outgoing[name] = (value, max_age)
        if self.response is not None:
            self.response.set_cookie(
                name,
                value,
                max_age=max_age,
                path="/",
                httponly=True,
                samesite="lax",
                secure=self.secure,
            )

    def clear(self, name: str) -> None:
        self.set(name, "", 0)


def get_cookie_jar(request: Request, response: Response) -> CookieJar:
    return CookieJar(
        incoming=request.cookies,
        secure=request.app.state.settings.is_production,
        response=response,
    )
