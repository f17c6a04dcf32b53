"""
tests/test_emails.py -- Email rendering, delivery adapters, verification mail.
"""

from __future__ import annotations

import smtplib

import pytest
from jinja2 import TemplateNotFound

from auth.models import TokenType
from auth.verification import EmailResult, send_verification_email
from core.config import Settings
from core.emails import (
    EmailRenderer,
    LogEmailSender,
    OutgoingEmail,
    SmtpEmailSender,
    build_email_sender,
)

# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def test_render_signup_template() -> None:
    message = EmailRenderer().render("signup", to="a@b.com", verify_link="https://x/verify?token=t1", pin=1234)
    assert message.to == "a@b.com"
    assert message.subject == "Confirm your email address"
    assert "https://x/verify?token=t1" in message.text
    assert "{%" not in message.text
    assert message.html and "https://x/verify?token=t1" in message.html


@pytest.mark.parametrize("locale", ["en-US", "en_GB", "xx", None])
def test_render_falls_back_to_default_locale(locale) -> None:
    message = EmailRenderer(default_locale="en").render("update", to="a@b.com", locale=locale, verify_link="L")
    assert message.subject == "Edit your profile"


def test_render_prefers_requested_locale(tmp_path) -> None:
    for locale, subject in (("en", "Hello"), ("de", "Hallo")):
        (tmp_path / locale).mkdir()
        (tmp_path / locale / "greet.txt").write_text(f'{{% set subject = "{subject}" %}}\n{{{{ name }}}}\n')
    renderer = EmailRenderer(default_locale="en", template_dir=tmp_path)

    message = renderer.render("greet", to="a@b.com", locale="de-AT", name="Ada")
    assert message.subject == "Hallo"
    assert message.text == "Ada"
    assert message.html is None


def test_render_html_is_escaped(tmp_path) -> None:
    (tmp_path / "en").mkdir()
    (tmp_path / "en" / "x.txt").write_text("{{ value }}")
    (tmp_path / "en" / "x.html").write_text("<p>{{ value }}</p>")
    message = EmailRenderer(template_dir=tmp_path).render("x", to="a@b.com", value="<b>")
    assert message.text == "<b>"
    assert message.html == "<p>&lt;b&gt;</p>"
    # no subject declared
    assert message.subject == "x"


def test_render_unknown_template_raises() -> None:
    with pytest.raises(TemplateNotFound):
        EmailRenderer().render("nope", to="a@b.com")


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None) -> None:
        self.host = host
        self.port = port
        self.calls: list[str] = []
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.calls.append("quit")

    def starttls(self) -> None:
        self.calls.append("starttls")

    def login(self, user, password) -> None:
        self.calls.append(f"login:{user}")

    def send_message(self, msg) -> None:
        self.messages.append(msg)


def test_build_email_sender_picks_adapter() -> None:
    assert isinstance(build_email_sender(Settings(smtp_host="")), LogEmailSender)
    sender = build_email_sender(Settings(smtp_host="mail.example.com", smtp_port=2525, smtp_user="u"))
    assert isinstance(sender, SmtpEmailSender)
    assert (sender.host, sender.port, sender.user) == ("mail.example.com", 2525, "u")


def test_log_sender_always_succeeds(caplog) -> None:
    with caplog.at_level("INFO", logger="gptauth.email"):
        assert LogEmailSender().send(OutgoingEmail(to="a@b.com", subject="S", text="T"))
    assert "a@b.com" in caplog.text


def test_smtp_sender_delivers(monkeypatch) -> None:
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    sender = SmtpEmailSender("mail.example.com", 587, user="u", password="p", sender="from@example.com")

    assert sender.send(OutgoingEmail(to="a@b.com", subject="S", text="T", html="<p>T</p>"))
    smtp = FakeSMTP.instances[0]
    assert smtp.calls == ["starttls", "login:u", "quit"]
    msg = smtp.messages[0]
    assert (msg["To"], msg["From"], msg["Subject"]) == ("a@b.com", "from@example.com", "S")
    assert len(msg.get_payload()) == 2


def test_smtp_sender_without_tls_or_login(monkeypatch) -> None:
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    assert SmtpEmailSender("localhost", 25, use_tls=False).send(OutgoingEmail(to="a@b.com", subject="S", text="T"))
    assert FakeSMTP.instances[0].calls == ["quit"]


def test_smtp_failure_returns_false(monkeypatch) -> None:
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("no server")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    assert SmtpEmailSender("localhost").send(OutgoingEmail(to="a@b.com", subject="S", text="T")) is False


# ---------------------------------------------------------------------------
# Verification mail
# ---------------------------------------------------------------------------


def _send(db, user_store, outbox, user_ref, **kwargs):
    with db.transaction() as conn:
        return send_verification_email(
            conn, user_store, EmailRenderer(), outbox, Settings(url_base="https://app.example.com/"), user_ref, **kwargs
        )


def test_verification_email_creates_token(db, user_store, outbox, make_user) -> None:
    user = make_user()
    outcome = _send(db, user_store, outbox, user.user_ref)
    assert outcome.result == EmailResult.SUCCESS
    assert outcome.token.type == TokenType.EMAIL_VERIFICATION
    assert f"https://app.example.com/web/signup.html?token={outcome.token.code}" in outbox.sent[0].text


def test_verification_email_reuses_matching_token(db, user_store, outbox, make_user) -> None:
    user = make_user()
    first = _send(db, user_store, outbox, user.user_ref).token
    again = _send(db, user_store, outbox, user.user_ref, token_code=first.code)
    assert again.token.code == first.code


def test_verification_email_ignores_token_of_other_type(db, user_store, outbox, make_user) -> None:
    user = make_user()
    first = _send(db, user_store, outbox, user.user_ref).token
    edit = _send(db, user_store, outbox, user.user_ref, token_code=first.code, token_type=TokenType.PROFILE_EDIT)
    assert edit.token.code != first.code
    assert edit.token.type == TokenType.PROFILE_EDIT
    assert "/web/update.html?token=" in outbox.sent[-1].text


def test_verification_email_unknown_user(db, user_store, outbox) -> None:
    assert _send(db, user_store, outbox, 12345).result == EmailResult.USER_NOT_FOUND
    assert outbox.sent == []


def test_verification_email_send_failure_keeps_token(db, user_store, outbox, make_user) -> None:
    user = make_user()
    outbox.fail = True
    outcome = _send(db, user_store, outbox, user.user_ref)
    assert outcome.result == EmailResult.EMAIL_SEND_FAILED
    with db.transaction() as conn:
        assert user_store.read_token(conn, outcome.token.code) is not None
