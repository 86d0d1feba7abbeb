"""Jinja2 email templates."""

from __future__ import annotations

from typing import Any

import jinja2

_BASE = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{{ subject }}</title></head>
<body style="font-family: Arial, sans-serif; color: #333;">
<h1>{{ subject }}</h1>
{% block body %}{% endblock %}
<p style="font-size: 12px; color: #888;">Sent {{ current_date }}</p>
</body>
</html>
"""

_ALERT = """\
{% extends "base.html" %}
{% block body %}
<p>Severity: <strong class="severity-{{ severity }}">{{ severity }}</strong></p>
<table style="border-collapse: collapse;">
  <tr><th align="left">Check</th><th align="left">Type</th><th align="left">Status</th><th align="left">Details</th></tr>
  {% for r in results %}
  <tr>
    <td>{{ r.name }}</td>
    <td>{{ r.kind }}</td>
    <td>{{ r.status }}</td>
    <td>{{ r.details or "No details provided" }}</td>
  </tr>
  {% endfor %}
</table>
{% endblock %}
"""

_RESOLVED = """\
{% extends "base.html" %}
{% block body %}
<p>The incident <strong>{{ incident.title }}</strong> on {{ check_name }} has been resolved.</p>
<p>Opened: {{ incident.created_at }}<br>Resolved: {{ incident.resolved_at }}</p>
{% endblock %}
"""

_SUBSCRIPTION_VERIFY = """\
{% extends "base.html" %}
{% block body %}
<p>Someone (hopefully you) subscribed <strong>{{ email }}</strong> to notifications for
{{ check_name }}.</p>
<p><a href="{{ verify_url }}">Confirm your subscription</a></p>
<p>If this wasn't you, ignore this email or <a href="{{ unsubscribe_url }}">unsubscribe</a>.</p>
{% endblock %}
"""

_SUBSCRIPTION_CONFIRM = """\
{% extends "base.html" %}
{% block body %}
<p><strong>{{ email }}</strong> will now receive notifications for {{ check_name }}.</p>
<p><a href="{{ unsubscribe_url }}">Unsubscribe</a> at any time.</p>
{% endblock %}
"""

_env = jinja2.Environment(
    loader=jinja2.DictLoader({
        "base.html": _BASE,
        "alert.html": _ALERT,
        "resolved.html": _RESOLVED,
        "subscription_verify.html": _SUBSCRIPTION_VERIFY,
        "subscription_confirm.html": _SUBSCRIPTION_CONFIRM,
    }),
    autoescape=jinja2.select_autoescape(default=True),
    undefined=jinja2.StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


def render(name: str, **context: Any) -> str:
    return _env.get_template(name).render(**context)
