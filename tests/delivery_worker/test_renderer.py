"""Tests for Jinja2 template rendering."""

import pytest
from jinja2 import UndefinedError
from jinja2.exceptions import SecurityError

from delivery_shared.enums import Channel

from delivery_worker.errors import DeliveryError, ErrorKind
from delivery_worker.renderer import (
    MessageTemplate,
    TemplateRegistry,
    create_default_templates,
    render_template,
)

_VARIABLES = {
    "customer_name": "Ada",
    "service_name": "Home cleaning",
    "service_date": "2026-03-02 09:00 UTC",
    "booking_ref": "BK-1001",
    "location": "",
}


class TestRenderTemplate:
    def test_plain_text(self) -> None:
        body = render_template(
            "Ref {{ booking_ref }} on {{ service_date }}",
            {"booking_ref": "BK-1", "service_date": "tomorrow"},
        )
        assert body == "Ref BK-1 on tomorrow"

    def test_text_is_not_escaped(self) -> None:
        assert render_template("{{ name }}", {"name": "Tom & Jerry"}) == "Tom & Jerry"

    def test_html_is_escaped(self) -> None:
        body = render_template("<p>{{ name }}</p>", {"name": "<b>x</b>"}, html=True)
        assert body == "<p>&lt;b&gt;x&lt;/b&gt;</p>"

    def test_strict_undefined_raises_on_missing_variable(self) -> None:
        with pytest.raises(UndefinedError):
            render_template("Hello {{ missing_var }}", {})

    def test_sandbox_blocks_attribute_escape(self) -> None:
        with pytest.raises(SecurityError):
            render_template("{{ name.__class__.__mro__ }}", {"name": "x"})


class TestTemplateRegistry:
    def test_render_subject_and_body(self) -> None:
        registry = TemplateRegistry()
        registry.register(
            "greeting",
            Channel.EMAIL,
            MessageTemplate(subject="Hi {{ name }}", body="<p>{{ name }}</p>"),
        )

        assert registry.has("greeting", Channel.EMAIL)
        assert not registry.has("greeting", Channel.SMS)
        assert registry.render("greeting", Channel.EMAIL, {"name": "Ada"}) == (
            "Hi Ada",
            "<p>Ada</p>",
        )

    def test_unknown_template_is_validation_error(self) -> None:
        with pytest.raises(DeliveryError) as exc_info:
            TemplateRegistry().render("missing", Channel.SMS, {})
        assert exc_info.value.kind == ErrorKind.VALIDATION

    def test_missing_variable_is_validation_error(self) -> None:
        registry = TemplateRegistry()
        registry.register("t", Channel.SMS, MessageTemplate(body="{{ nope }}"))

        with pytest.raises(DeliveryError) as exc_info:
            registry.render("t", Channel.SMS, {})
        assert exc_info.value.kind == ErrorKind.VALIDATION


class TestDefaultTemplates:
    @pytest.mark.parametrize("ref", ["reminder.7d", "reminder.24h", "reminder.1h"])
    def test_email_and_sms_registered(self, ref: str) -> None:
        templates = create_default_templates()
        assert templates.has(ref, Channel.EMAIL)
        assert templates.has(ref, Channel.SMS)

    def test_email_location_is_optional(self) -> None:
        templates = create_default_templates()

        subject, body = templates.render("reminder.24h", Channel.EMAIL, _VARIABLES)
        assert subject == "Your Home cleaning is tomorrow"
        assert " at " not in body

        _, body = templates.render(
            "reminder.24h", Channel.EMAIL, {**_VARIABLES, "location": "12 rue de la Paix"}
        )
        assert "at 12 rue de la Paix" in body

    def test_sms_one_hour(self) -> None:
        _, body = create_default_templates().render(
            "reminder.1h", Channel.SMS, _VARIABLES
        )
        assert body == "In 1 hour: Home cleaning at 2026-03-02 09:00 UTC. Ref BK-1001."
