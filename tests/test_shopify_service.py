"""
Shopify client: auth headers, pagination, failure policy and order transform
"""
import pytest

from fakes import SHOPIFY_ORDERS, shopify_order
from oms.models import Client, OrderStatus
from oms.services.credentials import encrypt_token
from oms.services.shopify_service import ShopifyService, transform_to_order

ORDERS = SHOPIFY_ORDERS


class TestShopifyService:
    @pytest.mark.asyncio
    async def test_access_token_header_and_window(self, acme_client, upstream):
        upstream.add("GET", ORDERS, (200, {"orders": [shopify_order()]}))
        service = ShopifyService(acme_client, transport=upstream.transport, max_retries=0)

        orders = await service.get_orders(created_at_min="2024-05-01T00:00:00+00:00")

        assert len(orders) == 1
        request = upstream.calls[0]
        assert request.url.host == "acme-store.myshopify.com"
        assert request.headers["X-Shopify-Access-Token"] == "shpat_acme"
        assert request.url.params["created_at_min"] == "2024-05-01T00:00:00+00:00"
        assert request.url.params["status"] == "any"
        assert service.last_error is None

    @pytest.mark.asyncio
    async def test_basic_auth_with_key_and_secret(self, upstream):
        client = Client(
            client_id="KEY001",
            client_name="Key Store",
            shopify_store_id="key-store.myshopify.com",
            shopify_api_key="key",
            shopify_api_secret=encrypt_token("secret"),
        )
        upstream.add("GET", ORDERS, (200, {"orders": []}))

        await ShopifyService(client, transport=upstream.transport, max_retries=0).get_orders()

        assert upstream.calls[0].headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_follows_next_link(self, acme_client, upstream):
        next_url = "https://acme-store.myshopify.com/admin/api/2024-01/orders.json?page_info=abc&limit=250"
        upstream.add(
            "GET",
            ORDERS,
            (200, {"orders": [shopify_order(1)]}, {"Link": f'<{next_url}>; rel="next"'}),
            (200, {"orders": [shopify_order(2)]}),
        )

        orders = await ShopifyService(acme_client, transport=upstream.transport, max_retries=0).get_orders()

        assert [o["id"] for o in orders] == [1, 2]
        assert upstream.calls[1].url.params["page_info"] == "abc"

    @pytest.mark.asyncio
    async def test_failure_returns_empty_list_and_records_error(self, acme_client, upstream):
        upstream.add("GET", ORDERS, (401, {"errors": "[API] Invalid API key or access token"}))
        service = ShopifyService(acme_client, transport=upstream.transport, max_retries=0)

        assert await service.get_orders() == []
        assert service.last_error

    @pytest.mark.asyncio
    async def test_unexpected_body_is_a_failure(self, acme_client, upstream):
        upstream.add("GET", ORDERS, (200, {"shop": {}}))
        service = ShopifyService(acme_client, transport=upstream.transport, max_retries=0)

        assert await service.get_orders() == []
        assert service.last_error

    @pytest.mark.asyncio
    async def test_connection_check(self, acme_client, upstream):
        upstream.add("GET", "/admin/api/2024-01/shop.json", (200, {"shop": {"name": "Acme"}}))

        assert await ShopifyService(acme_client, transport=upstream.transport, max_retries=0).test_connection()

    @pytest.mark.asyncio
    async def test_products(self, acme_client, upstream):
        upstream.add("GET", "/admin/api/2024-01/products.json", (200, {"products": [{"id": 7, "title": "Tote"}]}))
        service = ShopifyService(acme_client, transport=upstream.transport, max_retries=0)

        assert await service.get_products() == [{"id": 7, "title": "Tote"}]

    @pytest.mark.asyncio
    async def test_products_failure_returns_empty_list(self, acme_client, upstream):
        upstream.add("GET", "/admin/api/2024-01/products.json", (503, ""))
        service = ShopifyService(acme_client, transport=upstream.transport, max_retries=0)

        assert await service.get_products() == []
        assert service.last_error


class TestTransform:
    def test_paid_unfulfilled_order(self, acme_client):
        order = transform_to_order(shopify_order(), acme_client)

        assert order["order_id"] == "1001"
        assert order["client_id"] == "ACME001"
        assert order["fulfillment_status"] == OrderStatus.PENDING
        assert order["awb"] is None
        assert order["shipping_details"]["address"] == "12 MG Road, Flat 4"
        assert order["shipping_details"]["payment_mode"] == "Prepaid"
        assert order["shipping_details"]["amount"] == 1299.5
        assert order["product_details"]["product_name"] == "Tote Bag"
        assert order["product_details"]["quantity"] == 3
        assert order["product_details"]["dimensions"] == [10, 10, 10]
        assert order["product_details"]["weight"] == 0.5

    def test_unpaid_order_is_cod(self, acme_client):
        order = transform_to_order(shopify_order(financial_status="pending"), acme_client)

        assert order["shipping_details"]["payment_mode"] == "COD"

    def test_customer_name_fallback(self, acme_client):
        raw = shopify_order(shipping_address=None, customer={"first_name": "Ravi", "last_name": "K"})

        assert transform_to_order(raw, acme_client)["shipping_details"]["name"] == "Ravi K"

    @pytest.mark.parametrize("order_id", [None, "", "  "])
    def test_order_without_id_is_rejected(self, acme_client, order_id):
        with pytest.raises(ValueError):
            transform_to_order(shopify_order(order_id=order_id), acme_client)
