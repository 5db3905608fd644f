from __future__ import annotations

import httpx

from notifypipe.core.config import Settings
from notifypipe.services.channels.base import ChannelDispatcher
from notifypipe.services.channels.email import SendGridEmailDispatcher
from notifypipe.services.channels.push import PushDispatcher
from notifypipe.services.channels.twilio import TwilioSmsDispatcher, TwilioWhatsAppDispatcher


def build_dispatchers(settings: Settings, client: httpx.AsyncClient) -> dict[str, ChannelDispatcher]:
    # Register one dispatcher per delivery method; adding a channel only touches this map.
    dispatchers: list[ChannelDispatcher] = [
        SendGridEmailDispatcher(
            client=client,
            api_key=settings.sendgrid_api_key,
            from_email=settings.sendgrid_from_email,
            from_name=settings.sendgrid_from_name,
            base_url=settings.sendgrid_base_url,
            message_id_prefix=settings.notify_message_id_prefix,
            service_name=settings.app_name,
        ),
        TwilioSmsDispatcher(
            client=client,
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            base_url=settings.twilio_base_url,
        ),
        TwilioWhatsAppDispatcher(
            client=client,
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_whatsapp_number or settings.twilio_phone_number,
            base_url=settings.twilio_base_url,
        ),
        PushDispatcher(),
    ]
    return {dispatcher.method: dispatcher for dispatcher in dispatchers}
