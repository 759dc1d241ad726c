from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.http_adapters import breaker_states


def health_view(_request):
    """DB connectivity plus the circuit state of each downstream service.

    Only the database decides the status code; an open circuit means a
    degraded dependency, not an unhealthy order core.
    """
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    circuits = breaker_states()
    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                **{name: {"ok": state != "OPEN", "circuit": state} for name, state in circuits.items()},
            },
        },
        status=200 if db_ok else 503,
    )
