from unittest.mock import patch

import pytest

from hotelbook.service.crypto import FieldCipher
from hotelbook.service.email import EmailService


class TestFieldCipher:
    def test_roundtrip(self):
        cipher = FieldCipher("phone-key-material")

        ciphertext = cipher.encrypt("+44 20 7946 0958")

        assert ciphertext != "+44 20 7946 0958"
        assert cipher.decrypt(ciphertext) == "+44 20 7946 0958"

    def test_empty_values_stay_empty(self):
        cipher = FieldCipher("phone-key-material")

        assert cipher.encrypt(None) is None
        assert cipher.encrypt("") is None
        assert cipher.decrypt(None) is None

    def test_other_key_reads_as_absent(self):
        ciphertext = FieldCipher("first-key").encrypt("+1 555 0100")

        assert FieldCipher("second-key").decrypt(ciphertext) is None

    def test_key_material_is_required(self):
        with pytest.raises(ValueError):
            FieldCipher("")


class TestEmailService:
    def test_unconfigured_service_logs_instead_of_sending(self):
        service = EmailService()

        with patch("hotelbook.service.email.smtplib.SMTP") as smtp:
            assert service.deliver_otp("guest@example.com", "123456") is True

        assert service.is_configured is False
        smtp.assert_not_called()

    def test_configured_service_sends_over_starttls(self):
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="mailer@example.com",
            smtp_password="pw",
        )

        with patch("hotelbook.service.email.smtplib.SMTP") as smtp:
            assert service.deliver_otp("guest@example.com", "123456", ttl_minutes=10) is True

        server = smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer@example.com", "pw")
        from_addr, to_addr, message = server.sendmail.call_args.args
        assert (from_addr, to_addr) == ("mailer@example.com", "guest@example.com")
        assert "123456" in message

    def test_smtp_failure_returns_false(self):
        import smtplib

        service = EmailService(smtp_host="smtp.example.com", from_email="desk@example.com")

        with patch("hotelbook.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value.sendmail.side_effect = smtplib.SMTPException("down")
            assert service.deliver_otp("guest@example.com", "123456") is False
