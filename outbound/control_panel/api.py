from typing import Dict, List, Optional

import requests

from outbound.logging_config import get_logger

logger = get_logger(__name__)


class ControlPanelError(Exception):
    """Raised for any failed control-panel call. `status_code` is None for network errors."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class EnhanceAPI:
    """Enhance control-panel connection layer using a requests session.

    No retries happen here: a failed call raises and the task that made it
    is retried by the dispatcher.
    """

    def __init__(self, base_url, api_key, org_id, timeout=30):
        if not all([base_url, api_key, org_id]):
            raise ValueError("Missing Enhance configuration")

        self.base_url = base_url.rstrip("/")
        self.org_id = org_id
        self.timeout = timeout

        # Reusable HTTP session
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    def _request(self, method: str, endpoint: str, **kwargs):
        url = f"{self.base_url}{endpoint}"
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ControlPanelError(f"{method} {endpoint} failed: {e}") from e

        if r.status_code >= 400:
            raise ControlPanelError(
                f"{r.status_code} from Enhance on {method} {endpoint}: {r.text[:500]}",
                status_code=r.status_code,
            )
        if not r.text:
            return None
        try:
            return r.json()
        except ValueError as e:
            # e.g. an HTML maintenance page served with a 200
            raise ControlPanelError(f"Unreadable response from Enhance on {method} {endpoint}: {e}") from e

    def _get(self, endpoint: str, params: Optional[Dict] = None):
        return self._request("GET", endpoint, params=params)

    def _post(self, endpoint: str, data: Optional[Dict] = None):
        return self._request("POST", endpoint, json=data)

    def _patch(self, endpoint: str, data: Dict):
        return self._request("PATCH", endpoint, json=data)

    def _put(self, endpoint: str, data: Dict):
        return self._request("PUT", endpoint, json=data)

    @staticmethod
    def _id_of(data, what: str):
        if not isinstance(data, dict) or data.get("id") is None:
            raise ControlPanelError(f"Enhance returned no id for the new {what}")
        return data["id"]

    @staticmethod
    def _items(data) -> List[Dict]:
        """List endpoints return either a bare list or {"items": [...]}."""
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("items"), list):
            return data["items"]
        return []

    # Customers (child organisations)

    def list_customers(self) -> List[Dict]:
        return self._items(self._get(f"/orgs/{self.org_id}/customers"))

    def find_customer_by_email(self, email: str) -> Optional[Dict]:
        """Match on the owner's email, case-insensitively."""
        if not email:
            return None
        wanted = email.strip().lower()
        for customer in self.list_customers():
            candidates = (
                customer.get("ownerEmail"),
                customer.get("email"),
                (customer.get("login") or {}).get("email"),
            )
            if any(c and c.strip().lower() == wanted for c in candidates):
                return customer
        return None

    def get_customer(self, customer_org_id: str) -> Optional[Dict]:
        """Returns None when the organisation no longer exists."""
        try:
            return self._get(f"/orgs/{customer_org_id}")
        except ControlPanelError as e:
            if e.status_code == 404:
                return None
            raise

    def create_customer(self, name: str) -> str:
        data = self._post(f"/orgs/{self.org_id}/customers", {"name": name})
        return str(self._id_of(data, "customer"))

    def create_owner_login(self, customer_org_id: str, email: str, name: str, password: str) -> str:
        """Create a login in the customer's org and make it the OWNER member."""
        login = self._post(
            f"/logins?orgId={customer_org_id}",
            {"email": email, "name": name, "password": password},
        )
        login_id = self._id_of(login, "login")
        self._post(f"/orgs/{customer_org_id}/members", {"loginId": login_id, "roles": ["Owner"]})
        return str(login_id)

    def update_customer(self, customer_org_id: str, **fields) -> None:
        """PATCH /orgs/{id}. Accepted fields: name, isSuspended, locale."""
        self._patch(f"/orgs/{customer_org_id}", fields)

    # Subscriptions and websites

    def create_subscription(self, customer_org_id: str, plan_id) -> int:
        data = self._post(
            f"/orgs/{self.org_id}/customers/{customer_org_id}/subscriptions",
            {"planId": int(plan_id)},
        )
        return int(self._id_of(data, "subscription"))

    def list_websites(self, org_id: str) -> List[Dict]:
        return self._items(self._get(f"/orgs/{org_id}/websites"))

    def get_website(self, org_id: str, website_id: str) -> Optional[Dict]:
        try:
            return self._get(f"/orgs/{org_id}/websites/{website_id}")
        except ControlPanelError as e:
            if e.status_code == 404:
                return None
            raise

    def find_website_by_domain(self, org_id: str, domain: str) -> Optional[Dict]:
        wanted = domain.strip().lower()
        for website in self.list_websites(org_id):
            if (website.get("domain") or "").strip().lower() == wanted:
                return website
        return None

    def create_website(self, org_id: str, domain: str, subscription_id: Optional[int] = None) -> str:
        body = {"domain": domain}
        if subscription_id is not None:
            body["subscriptionId"] = int(subscription_id)
        data = self._post(f"/orgs/{org_id}/websites", body)
        return str(self._id_of(data, "website"))

    def update_website(self, org_id: str, website_id: str, **fields) -> None:
        self._put(f"/orgs/{org_id}/websites/{website_id}", fields)
