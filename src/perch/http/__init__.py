"""HTTP request/response model consumed by every pipeline stage."""

from perch.http.request import Request
from perch.http.response import Response, redirect, to_response

__all__ = ["Request", "Response", "redirect", "to_response"]
