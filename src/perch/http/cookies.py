"""Cookie parsing and Set-Cookie serialization.

Only the session stage writes cookies; everything else just reads
``Request.cookies``.
"""

from dataclasses import dataclass
from http.cookies import CookieError, SimpleCookie


def parse_cookies(header: str) -> dict[str, str]:
    """Parse a ``Cookie`` header value into a name-value dict.

    Malformed headers yield whatever pairs parsed cleanly before the error.
    """
    if not header:
        return {}
    jar: SimpleCookie = SimpleCookie()
    try:
        jar.load(header)
    except CookieError:
        pass
    return {name: morsel.value for name, morsel in jar.items()}


@dataclass(frozen=True, slots=True)
class SetCookie:
    """One ``Set-Cookie`` directive attached to a Response."""

    name: str
    value: str
    max_age: int | None = None
    path: str = "/"
    domain: str | None = None
    secure: bool = False
    httponly: bool = True
    samesite: str = "lax"

    @classmethod
    def expired(cls, name: str, path: str = "/") -> "SetCookie":
        """A directive that tells the client to drop *name*."""
        return cls(name=name, value="", max_age=0, path=path)

    def to_header_value(self) -> str:
        attrs = [f"{self.name}={self.value}"]
        if self.max_age is not None:
            attrs.append(f"Max-Age={self.max_age}")
        if self.path:
            attrs.append(f"Path={self.path}")
        if self.domain:
            attrs.append(f"Domain={self.domain}")
        if self.secure:
            attrs.append("Secure")
        if self.httponly:
            attrs.append("HttpOnly")
        if self.samesite:
            attrs.append(f"SameSite={self.samesite.capitalize()}")
        return "; ".join(attrs)
