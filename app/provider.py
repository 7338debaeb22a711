"""
Twilio REST send primitive.

Channel-agnostic: callers pass the channel and the client picks the sender
number and the 'whatsapp:' endpoint prefixes.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from cryptography.fernet import Fernet, InvalidToken

from app.gate import Credentials
from app.utils import address_for_channel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_sid: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class TwilioClient:
    def __init__(
        self,
        encryption_key: str,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        status_callback_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.status_callback_url = status_callback_url
        self._cipher = Fernet(encryption_key.encode()) if encryption_key else None
        self._http = http_client or httpx.Client(timeout=timeout)

    def decrypt_token(self, encrypted: str) -> str:
        """Decrypt a stored auth token"""
        if self._cipher is None:
            raise ValueError("CREDENTIALS_ENCRYPTION_KEY is missing")
        return self._cipher.decrypt(encrypted.encode()).decode()

    def send(self, credentials: Credentials, to: str, body: str, channel: str) -> SendResult:
        """
        Send one message through the company's subaccount.

        Provider rejections and transport errors come back as a failed
        SendResult, never as exceptions.
        """
        sender = credentials.sender_for(channel)
        if not sender:
            return SendResult(success=False, error=f"No {channel} sender number configured for company")

        try:
            auth_token = self.decrypt_token(credentials.auth_token_encrypted)
        except (InvalidToken, ValueError) as e:
            logger.error(f"Failed to decrypt Twilio credentials for {credentials.subaccount_sid}: {e}")
            return SendResult(success=False, error="Failed to decrypt credentials")

        data = {
            "To": address_for_channel(to, channel),
            "From": address_for_channel(sender, channel),
            "Body": body,
        }
        if self.status_callback_url:
            data["StatusCallback"] = self.status_callback_url

        url = f"{self.api_base}/Accounts/{credentials.subaccount_sid}/Messages.json"
        logger.info(f"Sending {channel} message to {data['To']}")

        try:
            response = self._http.post(url, auth=(credentials.subaccount_sid, auth_token), data=data)
        except httpx.HTTPError as e:
            logger.error(f"Twilio transport error: {e}")
            return SendResult(success=False, error=str(e))

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code in (200, 201):
            logger.info(f"Twilio accepted message {payload.get('sid')}")
            return SendResult(success=True, message_sid=payload.get("sid"), status=payload.get("status"))

        error_code = payload.get("code")
        error_message = payload.get("message", f"Twilio returned HTTP {response.status_code}")
        logger.error(f"Twilio API error [{error_code}]: {error_message}")
        return SendResult(
            success=False,
            error=error_message,
            error_code=str(error_code) if error_code is not None else None,
        )

    def close(self) -> None:
        self._http.close()
