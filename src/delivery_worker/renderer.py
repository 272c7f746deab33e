"""Jinja2 template rendering for notification content."""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from delivery_shared.enums import Channel

from delivery_worker.errors import DeliveryError, ErrorKind

_html_env = SandboxedEnvironment(
    autoescape=True,
    undefined=StrictUndefined,
    keep_trailing_newline=False,
)
# SMS and chat bodies are plain text; escaping would mangle "&" and quotes.
_text_env = SandboxedEnvironment(
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=False,
)


def render_template(
    template_str: str, context: Mapping[str, Any], *, html: bool = False
) -> str:
    """Render a Jinja2 template string with the given context.

    Uses SandboxedEnvironment to prevent SSTI and StrictUndefined
    to raise on missing variables.
    All context values are converted to strings for safe template rendering.
    """
    str_context = {k: str(v) for k, v in context.items()}
    env = _html_env if html else _text_env
    return env.from_string(template_str).render(str_context)


@dataclass(frozen=True, slots=True)
class MessageTemplate:
    body: str
    subject: str | None = None

    def render(self, variables: Mapping[str, Any], *, html: bool) -> tuple[str | None, str]:
        subject = (
            render_template(self.subject, variables) if self.subject is not None else None
        )
        return subject, render_template(self.body, variables, html=html)


class TemplateRegistry:
    """Named templates per channel, referenced by ``DeliveryJob.template_ref``."""

    def __init__(self) -> None:
        self._templates: dict[tuple[str, str], MessageTemplate] = {}

    def register(self, ref: str, channel: str, template: MessageTemplate) -> None:
        self._templates[(ref, channel)] = template

    def has(self, ref: str, channel: str) -> bool:
        return (ref, channel) in self._templates

    def render(
        self, ref: str, channel: str, variables: Mapping[str, Any]
    ) -> tuple[str | None, str]:
        """Return ``(subject, body)`` for *ref* on *channel*.

        Unknown templates and missing variables are caller errors and
        raise a validation :class:`DeliveryError`.
        """
        template = self._templates.get((ref, channel))
        if template is None:
            raise DeliveryError(
                ErrorKind.VALIDATION,
                f"No template {ref!r} for channel {channel!r}",
            )
        try:
            return template.render(variables, html=channel == Channel.EMAIL)
        except TemplateError as exc:
            raise DeliveryError(
                ErrorKind.VALIDATION, f"Template {ref!r} failed to render: {exc}"
            ) from exc


_REMINDER_EMAIL_BODY = """\
<p>Hello {{ customer_name }},</p>
<p>This is a reminder that your {{ service_name }} is scheduled for
<strong>{{ service_date }}</strong>{% if location %} at {{ location }}{% endif %}.</p>
<p>Booking reference: {{ booking_ref }}</p>"""

_REMINDER_TEMPLATES: dict[str, dict[str, MessageTemplate]] = {
    "reminder.7d": {
        Channel.EMAIL: MessageTemplate(
            subject="Your {{ service_name }} is in one week",
            body=_REMINDER_EMAIL_BODY,
        ),
        Channel.SMS: MessageTemplate(
            body="Reminder: {{ service_name }} on {{ service_date }}. Ref {{ booking_ref }}.",
        ),
    },
    "reminder.24h": {
        Channel.EMAIL: MessageTemplate(
            subject="Your {{ service_name }} is tomorrow",
            body=_REMINDER_EMAIL_BODY,
        ),
        Channel.SMS: MessageTemplate(
            body="Tomorrow: {{ service_name }} at {{ service_date }}. Ref {{ booking_ref }}.",
        ),
    },
    "reminder.1h": {
        Channel.EMAIL: MessageTemplate(
            subject="Your {{ service_name }} starts in one hour",
            body=_REMINDER_EMAIL_BODY,
        ),
        Channel.SMS: MessageTemplate(
            body="In 1 hour: {{ service_name }} at {{ service_date }}. Ref {{ booking_ref }}.",
        ),
    },
}


def create_default_templates() -> TemplateRegistry:
    """Create a registry holding the booking reminder templates."""
    registry = TemplateRegistry()
    for ref, by_channel in _REMINDER_TEMPLATES.items():
        for channel, template in by_channel.items():
            registry.register(ref, channel, template)
    return registry
