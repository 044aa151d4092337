from __future__ import annotations

import contextvars

# Correlation id for the current HTTP request, blank outside one
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")
