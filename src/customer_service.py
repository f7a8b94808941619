"""Customer (contact) resolution.

Finds the Zoho contact for an order's billing email or creates one, and
keeps reused contacts up to date with the latest order details.
"""

import logging
from typing import Dict, Optional

from .models import Order, OrderAddress, ZohoAddress, ZohoContact
from .zoho_client import RemoteApiError, RemoteValidationError, ZohoAPIError, ZohoBooksClient

logger = logging.getLogger(__name__)

ADDRESS_COMPARE_FIELDS = ("address", "city", "state", "zip", "country")


class CustomerService:
    """Maps orders to Zoho contacts with find-or-create semantics."""

    def __init__(self, client: ZohoBooksClient):
        self.client = client

    async def find_or_create_contact(self, order: Order) -> ZohoContact:
        """Resolve the Zoho contact for an order.

        An existing contact with the same email is reused, after checking its
        currency and pushing changed name, phone, company or address details.

        Args:
            order: Order to resolve a contact for

        Returns:
            The reused or newly created ZohoContact

        Raises:
            RemoteValidationError: The order has no billing email, or the
                existing contact uses a different currency
        """
        email = order.billing_email
        if not email:
            raise RemoteValidationError("Order has no billing email address.")

        existing = await self.get_contact_by_email(email)
        if existing is not None:
            logger.debug(f"Found existing contact {existing.contact_id} for {email}")
            self.ensure_currency_compatible(existing, order)

            if self.contact_needs_update(existing, order):
                await self.update_contact(existing.contact_id, order)
            return existing

        return await self.create_contact(order)

    async def get_contact_by_email(self, email: str) -> Optional[ZohoContact]:
        """Find a contact by email and load its full record."""
        match = await self.client.find_contact_by_email(email)
        if match is None:
            return None
        return await self.client.get_contact(match.contact_id)

    async def get_contact_name(self, contact_id: str) -> Optional[str]:
        """Display name of a contact, None when it cannot be loaded."""
        try:
            contact = await self.client.get_contact(contact_id)
        except ZohoAPIError as e:
            logger.warning(f"Failed to load contact {contact_id}: {e}")
            return None
        return contact.display_name

    # =========================================================================
    # CURRENCY
    # =========================================================================

    @staticmethod
    def is_currency_compatible(contact: ZohoContact, order: Order) -> bool:
        """A contact without a currency uses the organization default and accepts any order."""
        if not contact.currency_code:
            return True
        return contact.currency_code.upper() == order.currency.upper()

    def ensure_currency_compatible(self, contact: ZohoContact, order: Order) -> None:
        if self.is_currency_compatible(contact, order):
            return
        logger.warning(
            f"Currency mismatch for {order.billing_email}: "
            f"contact {contact.currency_code}, order {order.currency}"
        )
        raise RemoteValidationError(
            f"Currency mismatch: Contact is set to {contact.currency_code} but order uses "
            f"{order.currency}. Please update the contact currency in Zoho Books or use a "
            f"different email."
        )

    # =========================================================================
    # CREATE / UPDATE
    # =========================================================================

    async def create_contact(self, order: Order) -> ZohoContact:
        payload = self.map_order_to_contact(order)
        logger.info(f"Creating contact for order {order.id}: {payload['contact_name']}")
        try:
            return await self.client.create_contact(payload)
        except RemoteApiError as e:
            raise RemoteApiError(
                f"Failed to create Zoho contact: {e}", code=e.code, status_code=e.status_code
            ) from e

    async def update_contact(self, contact_id: str, order: Order) -> bool:
        """Push the order's contact details to an existing contact.

        The currency is never sent; Zoho refuses currency changes on contacts
        that already have transactions. Failures are logged and reported as
        False since the contact itself is still usable.
        """
        payload = self.map_order_to_contact(order)
        payload.pop("currency_code", None)

        logger.info(f"Updating contact {contact_id}")
        try:
            await self.client.update_contact(contact_id, payload)
            return True
        except ZohoAPIError as e:
            logger.warning(f"Failed to update contact {contact_id}: {e}")
            return False

    def contact_needs_update(self, contact: ZohoContact, order: Order) -> bool:
        if order.contact_name != (contact.contact_name or ""):
            logger.debug(f"Contact name changed: {contact.contact_name!r} -> {order.contact_name!r}")
            return True

        phone = order.billing.phone
        if phone and phone != (contact.phone or ""):
            return True

        company = order.billing.company
        if company and company != (contact.company_name or ""):
            return True

        if self._address_differs(contact.billing_address, order.billing):
            return True

        if order.has_shipping_address and self._address_differs(contact.shipping_address, order.shipping):
            return True

        return False

    def _address_differs(self, remote: Optional[ZohoAddress], local: OrderAddress) -> bool:
        remote_fields = remote.model_dump() if remote else {}
        local_fields = self.map_address(local)
        for name in ADDRESS_COMPARE_FIELDS:
            if (local_fields.get(name) or "") != (remote_fields.get(name) or ""):
                return True
        return False

    # =========================================================================
    # MAPPING
    # =========================================================================

    @staticmethod
    def map_address(address: OrderAddress) -> Dict[str, str]:
        fields = {
            "address": address.address_1,
            "street2": address.address_2,
            "city": address.city,
            "state": address.state,
            "zip": address.postcode,
            "country": address.country,
        }
        return {k: v for k, v in fields.items() if v}

    def map_order_to_contact(self, order: Order) -> dict:
        """Build the Zoho contact body for an order's billing details."""
        contact = {
            "contact_name": order.contact_name,
            "email": order.billing_email,
            "contact_type": "customer",
        }
        if order.currency:
            contact["currency_code"] = order.currency
        if order.billing.phone:
            contact["phone"] = order.billing.phone
        if order.billing.company:
            contact["company_name"] = order.billing.company

        billing_address = self.map_address(order.billing)
        if billing_address:
            contact["billing_address"] = billing_address

        if order.has_shipping_address:
            shipping_address = self.map_address(order.shipping)
            if shipping_address:
                contact["shipping_address"] = shipping_address

        return contact
