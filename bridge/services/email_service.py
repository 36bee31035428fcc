"""
Email service for sending temporary passwords via AWS SES.
"""

import json
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from bridge.core.config import settings
from bridge.core.logging import get_logger

logger = get_logger(__name__)

TEMPORARY_PASSWORD_SUBJECT = "Your account has moved to our new sign-in service"


class EmailService:
    """Service for sending emails via AWS SES."""

    def __init__(
        self, region_name: Optional[str] = None, from_email: Optional[str] = None
    ):
        """Initialise the SES client."""
        self.from_email = from_email or settings.SES_FROM_EMAIL
        try:
            self.ses_client = boto3.client(
                "ses", region_name=region_name or settings.SES_REGION
            )
        except (BotoCoreError, ValueError) as e:
            logger.error(f"Failed to initialise SES client: {e}")
            self.ses_client = None

    def send_temporary_password_email(self, to_email: str, password: str) -> bool:
        """
        Send a migrated user their temporary password.

        Args:
            to_email: Recipient email address
            password: Temporary password, must be changed at first sign-in

        Returns:
            True if SES accepted the message, False otherwise
        """
        if not self.ses_client:
            logger.error("SES client not available")
            return False

        body_text = (
            "Your account has been moved to our new sign-in service.\n\n"
            f"Temporary password: {password}\n\n"
            "You will be asked to choose a new password the first time you sign in.\n"
        )

        try:
            response = self.ses_client.send_email(
                Source=self.from_email,
                Destination={"ToAddresses": [to_email]},
                Message={
                    "Subject": {"Data": TEMPORARY_PASSWORD_SUBJECT, "Charset": "UTF-8"},
                    "Body": {"Text": {"Data": body_text, "Charset": "UTF-8"}},
                },
            )

            logger.info(
                json.dumps(
                    {
                        "event": "temporary_password_email_sent",
                        "to": to_email,
                        "message_id": response.get("MessageId", ""),
                    }
                )
            )
            return True

        except ClientError as e:
            logger.error(
                json.dumps(
                    {
                        "event": "temporary_password_email_failed",
                        "to": to_email,
                        "error_code": e.response.get("Error", {}).get("Code", "Unknown"),
                        "error_message": e.response.get("Error", {}).get(
                            "Message", str(e)
                        ),
                    }
                )
            )
            return False

        except BotoCoreError as e:
            logger.error(
                json.dumps(
                    {
                        "event": "temporary_password_email_error",
                        "to": to_email,
                        "error": str(e),
                    }
                )
            )
            return False


# Singleton instance
email_service = EmailService()
