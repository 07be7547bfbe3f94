import ipaddress
import json

from django.http import JsonResponse

from orders.exceptions import SettlementError


def client_ip(request) -> str:
    """Best-effort caller address; the gateway wants a plain IPv4/IPv6 string."""
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    candidate = forwarded.split(",")[0].strip() if forwarded else request.META.get("REMOTE_ADDR", "")
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return "127.0.0.1"


def json_body(request):
    try:
        data = json.loads(request.body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def error_response(exc: SettlementError) -> JsonResponse:
    body = {"ok": False, "error": exc.code, "detail": str(exc)}
    errors = getattr(exc, "errors", None)
    if errors:
        body["errors"] = errors
    return JsonResponse(body, status=exc.http_status)
