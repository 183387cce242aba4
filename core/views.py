from django.db import connection
from django.http import HttpResponse, JsonResponse
from loguru import logger

ENDPOINTS = [
    ('POST', '/api/authorizations', 'Grant a capped payment authorization'),
    ('POST', '/api/milestones/<id>/approve', 'Approve a milestone and charge it'),
    ('POST', '/api/verification/send', 'Send a verification code'),
    ('GET', '/api/fees', 'Quote fees for an amount and method'),
    ('POST', '/api/disputes', 'Dispute a payment within 48 hours'),
]

HOME_PAGE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8" />
<title>MilestonePay</title>
<style>
    body {{ font-family: -apple-system, "Segoe UI", sans-serif; color: #1e293b; max-width: 720px; margin: 4rem auto; }}
    td {{ padding: 0.35rem 1rem 0.35rem 0; }}
    code {{ background: #f1f5f9; padding: 0.15rem 0.4rem; border-radius: 4px; }}
</style>
</head>
<body>
<h1>MilestonePay</h1>
<p>Authorize once, pay per approved milestone.</p>
<table>{rows}</table>
</body>
</html>"""


def home(request):
    rows = ''.join(
        f'<tr><td><code>{method} {path.replace("<", "&lt;").replace(">", "&gt;")}</code></td><td>{text}</td></tr>'
        for method, path, text in ENDPOINTS
    )
    return HttpResponse(HOME_PAGE_HTML.format(rows=rows), content_type="text/html; charset=utf-8")


def health(request):
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except Exception as exc:
        logger.error("health check database failure: {}", exc)
        return JsonResponse({"status": "degraded", "database": "unavailable"}, status=503)
    return JsonResponse({"status": "ok"})
