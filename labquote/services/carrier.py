"""
Carrier tracking poll clients.

The tracking gate only depends on CarrierClient.poll_tracking / poll_many;
the UPS client is the one production implementation.
"""
import uuid
from dataclasses import dataclass, field
from typing import Optional

import requests
from flask import current_app

from labquote.errors import CarrierError

IN_TRANSIT = "in_transit"
DELIVERED = "delivered"


@dataclass
class PollResult:
    tracking_number: str
    success: bool
    new_status: Optional[str] = None
    old_status: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    details: dict = field(default_factory=dict)


class CarrierClient:
    name = "carrier"

    def poll_tracking(self, tracking_number):
        raise NotImplementedError

    def poll_many(self, tracking_numbers):
        """One batched poll; a failing number yields success=False rather than aborting the batch."""
        results = []
        for number in tracking_numbers:
            try:
                results.append(self.poll_tracking(number))
            except CarrierError as e:
                results.append(PollResult(tracking_number=number, success=False, error=e.message))
        return results


class NullCarrierClient(CarrierClient):
    name = "none"

    def poll_tracking(self, tracking_number):
        raise CarrierError("carrier not configured")

    def poll_many(self, tracking_numbers):
        raise CarrierError("carrier not configured")


class UpsCarrierClient(CarrierClient):
    name = "ups"

    def __init__(self, client_id, client_secret, base_url="https://onlinetools.ups.com", timeout=10, session=None):
        if not client_id or not client_secret:
            raise CarrierError("UPS credentials not configured")
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def _access_token(self):
        try:
            resp = self.http.post(
                f"{self.base_url}/security/v1/oauth/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise CarrierError(f"UPS auth request failed: {e}")
        if resp.status_code != 200:
            raise CarrierError(f"Failed to authenticate with UPS ({resp.status_code})")
        return resp.json()["access_token"]

    def _tracking_details(self, tracking_number, token):
        try:
            resp = self.http.get(
                f"{self.base_url}/api/track/v1/details/{tracking_number}",
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                    "transId": uuid.uuid4().hex,
                    "transactionSrc": "labquote",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise CarrierError(f"UPS tracking request failed: {e}")
        if resp.status_code != 200:
            raise CarrierError(f"Failed to get tracking info: {resp.status_code}")
        return resp.json()

    @staticmethod
    def determine_status(payload):
        try:
            activity = payload["trackResponse"]["shipment"][0]["package"][0]["activity"][0]
        except (KeyError, IndexError, TypeError):
            return IN_TRANSIT
        status = activity.get("status") or {}
        if status.get("type") == "D" or status.get("code") == "FS":
            return DELIVERED
        return IN_TRANSIT

    def poll_tracking(self, tracking_number):
        token = self._access_token()
        return self._poll_with_token(tracking_number, token)

    def _poll_with_token(self, tracking_number, token):
        try:
            payload = self._tracking_details(tracking_number, token)
        except CarrierError as e:
            return PollResult(tracking_number=tracking_number, success=False, error=e.message)
        new_status = self.determine_status(payload)
        return PollResult(
            tracking_number=tracking_number,
            success=True,
            new_status=new_status,
            message=f"UPS reports {new_status}",
        )

    def poll_many(self, tracking_numbers):
        # one token for the whole batch; an auth failure fails the batch
        token = self._access_token()
        current_app.logger.info("[TRACKING] UPS poll numbers=%d", len(tracking_numbers))
        return [self._poll_with_token(n, token) for n in tracking_numbers]


def build_carrier_client(config):
    backend = (config.get("CARRIER_BACKEND") or "none").lower()
    if backend == "ups" and config.get("UPS_CLIENT_ID") and config.get("UPS_CLIENT_SECRET"):
        return UpsCarrierClient(
            config["UPS_CLIENT_ID"],
            config["UPS_CLIENT_SECRET"],
            base_url=config.get("UPS_BASE_URL") or "https://onlinetools.ups.com",
            timeout=config.get("UPS_TIMEOUT") or 10,
        )
    return NullCarrierClient()