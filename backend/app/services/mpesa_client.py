# services/mpesa_client.py
import base64
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import httpx

from app.core.config import MpesaCredentials, Settings
from app.core.errors import ConfigurationError, UpstreamAuthError, UpstreamPaymentError

logger = logging.getLogger("malipo.mpesa")

OAUTH_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
B2C_PATH = "/mpesa/b2c/v1/paymentrequest"
STATUS_PATH = "/mpesa/transactionstatus/v1/query"


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_in: int


def stk_timestamp(tz_name: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(ZoneInfo(tz_name))
    return now.strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("utf-8")


def provider_amount(amount: float):
    # Daraja rejects "500.0"; whole amounts go out as ints
    return int(amount) if float(amount).is_integer() else amount


def accepted(response: Dict[str, Any]) -> bool:
    return str(response.get("ResponseCode")) == "0"


def rejection_message(response: Dict[str, Any], fallback: str) -> str:
    return response.get("errorMessage") or response.get("ResponseDescription") or fallback


class MpesaClient:
    """
    Thin async wrapper over the Daraja endpoints.
    Every call opens its own AsyncClient with the configured timeout; nothing is cached.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.MPESA_HTTP_TIMEOUT, transport=self.transport)

    # ==================== Token Provider ====================
    async def get_access_token(self, environment: str) -> AccessToken:
        creds = self.settings.credentials_for(environment)
        return await self.token_for(creds)

    async def token_for(self, creds: MpesaCredentials) -> AccessToken:
        basic = base64.b64encode(f"{creds.consumer_key}:{creds.consumer_secret}".encode("utf-8")).decode("utf-8")
        url = f"{creds.base_url}{OAUTH_PATH}"

        async with self._http() as client:
            try:
                resp = await client.get(url, headers={"Authorization": f"Basic {basic}"})
            except httpx.HTTPError as e:
                logger.error(f"M-Pesa auth request failed ({creds.environment}): {e}")
                raise UpstreamAuthError(f"M-Pesa auth request failed: {e}")

        if resp.status_code != 200:
            logger.warning(f"M-Pesa auth rejected ({creds.environment}): {resp.status_code}")
            raise UpstreamAuthError(
                f"M-Pesa auth failed: {resp.status_code} - {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
            token = data["access_token"]
        except (ValueError, KeyError, TypeError):
            raise UpstreamAuthError("M-Pesa auth response missing access_token",
                                    status_code=resp.status_code, body=resp.text)

        try:
            expires_in = int(data.get("expires_in", 0))
        except (TypeError, ValueError):
            expires_in = 0
        return AccessToken(token=token, expires_in=expires_in)

    # ==================== Payment endpoints ====================
    async def _post(self, creds: MpesaCredentials, path: str, token: AccessToken, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{creds.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {token.token}",
            "Content-Type": "application/json",
        }
        async with self._http() as client:
            try:
                resp = await client.post(url, json=body, headers=headers)
            except httpx.HTTPError as e:
                logger.error(f"M-Pesa request to {path} failed: {e}")
                raise UpstreamPaymentError(f"M-Pesa request failed: {e}")

        try:
            data = resp.json()
        except ValueError:
            raise UpstreamPaymentError(f"M-Pesa returned a non-JSON response ({resp.status_code})")
        if not isinstance(data, dict):
            raise UpstreamPaymentError(f"M-Pesa returned an unexpected response ({resp.status_code}): {data!r}")
        logger.debug(f"M-Pesa {path} response: {data}")
        return data

    async def stk_push(self, creds: MpesaCredentials, token: AccessToken, *, phone_number: str,
                       amount: float, account_reference: str, transaction_desc: str,
                       callback_url: str) -> Dict[str, Any]:
        if not creds.shortcode or not creds.passkey:
            raise ConfigurationError(f"M-Pesa {creds.environment} shortcode/passkey not configured")

        timestamp = stk_timestamp(self.settings.TIMEZONE)
        body = {
            "BusinessShortCode": creds.shortcode,
            "Password": stk_password(creds.shortcode, creds.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": provider_amount(amount),
            "PartyA": phone_number,
            "PartyB": creds.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }
        return await self._post(creds, STK_PUSH_PATH, token, body)

    async def b2c_payment(self, creds: MpesaCredentials, token: AccessToken, *, phone_number: str,
                          amount: float, command_id: str, remarks: str, occasion: str,
                          result_url: str, timeout_url: str) -> Dict[str, Any]:
        body = {
            "InitiatorName": creds.initiator_name,
            "SecurityCredential": creds.security_credential,
            "CommandID": command_id,
            "Amount": provider_amount(amount),
            "PartyA": creds.shortcode,
            "PartyB": phone_number,
            "Remarks": remarks,
            "QueueTimeOutURL": timeout_url,
            "ResultURL": result_url,
            # Daraja's own spelling
            "Occassion": occasion,
        }
        return await self._post(creds, B2C_PATH, token, body)

    async def transaction_status(self, creds: MpesaCredentials, token: AccessToken, *,
                                 transaction_id: str, result_url: str, timeout_url: str) -> Dict[str, Any]:
        body = {
            "Initiator": creds.initiator_name,
            "SecurityCredential": creds.security_credential,
            "CommandID": "TransactionStatusQuery",
            "TransactionID": transaction_id,
            "PartyA": creds.shortcode,
            "IdentifierType": "4",
            "ResultURL": result_url,
            "QueueTimeOutURL": timeout_url,
            "Remarks": "Transaction status query",
            "Occasion": "Status check",
        }
        return await self._post(creds, STATUS_PATH, token, body)


def require_initiator(creds: MpesaCredentials) -> None:
    if not creds.security_credential:
        raise ConfigurationError("Security credential not configured")
    if not creds.initiator_name or not creds.shortcode:
        raise ConfigurationError(f"M-Pesa {creds.environment} initiator/shortcode not configured")
