"""
Reconciliation engine: Shopify upserts, Shiprocket import, status refresh and public tracking
"""
import asyncio

import httpx
import pytest

from fakes import SHIPROCKET_BASE, SHOPIFY_ORDERS as ORDERS, shopify_order, sr_path, tracking_payload
from oms.errors import CourierReconnectRequiredError, NotFoundError
from oms.models import OrderStatus
from oms.services import reconciliation
from oms.services.reconciliation import ReconciliationEngine, merge_details
from oms.services.shiprocket_service import ShiprocketService, TrackingResult
from oms.services.shopify_service import ShopifyService

LOGIN = sr_path("/auth/login")


def shopify_factory(upstream):
    return lambda client: ShopifyService(client, transport=upstream.transport, max_retries=0)


def courier_factory(upstream):
    def build(client):
        return ShiprocketService(
            email="ops@acme.example",
            password="secret",
            base_url=SHIPROCKET_BASE,
            transport=upstream.transport,
            max_retries=0,
            label=client.client_id if client is not None else "default",
        )

    return build


@pytest.fixture
def engine(storage, upstream):
    return ReconciliationEngine(
        storage,
        commerce_factory=shopify_factory(upstream),
        courier_factory=courier_factory(upstream),
    )


class TestShopifySync:
    @pytest.mark.asyncio
    async def test_new_paid_order_is_created_pending(self, engine, storage, acme_client, upstream):
        upstream.add("GET", ORDERS, (200, {"orders": [shopify_order("1001", None, "paid")]}))

        result = await engine.sync_client_orders(acme_client)

        order = storage.get_order_by_order_id("1001")
        assert result.success and result.created == 1
        assert order.client_id == "ACME001"
        assert order.fulfillment_status == OrderStatus.PENDING
        assert order.awb is None

    @pytest.mark.asyncio
    async def test_resync_is_idempotent(self, engine, storage, acme_client, upstream):
        upstream.add("GET", ORDERS, (200, {"orders": [shopify_order("1001")]}))

        await engine.sync_client_orders(acme_client)
        before = storage.get_order_by_order_id("1001").to_dict()
        second = await engine.sync_client_orders(acme_client)

        assert (second.created, second.updated, second.unchanged) == (0, 0, 1)
        assert len(storage.get_all_orders()) == 1
        assert storage.get_order_by_order_id("1001").to_dict() == before

    @pytest.mark.asyncio
    async def test_assigned_awb_survives_resync(self, engine, storage, acme_client, make_order, upstream):
        make_order("1001", awb="AWB1", courier="Delhivery", fulfillment_status=OrderStatus.INPROCESS)
        upstream.add("GET", ORDERS, (200, {"orders": [shopify_order("1001", None, "paid")]}))

        await engine.sync_client_orders(acme_client)

        order = storage.get_order_by_order_id("1001")
        assert order.awb == "AWB1"
        assert order.courier == "Delhivery"
        assert order.fulfillment_status == OrderStatus.INPROCESS

    @pytest.mark.asyncio
    async def test_status_moves_forward(self, engine, storage, acme_client, make_order, upstream):
        make_order("1001")
        upstream.add("GET", ORDERS, (200, {"orders": [shopify_order("1001", "fulfilled", "paid")]}))

        result = await engine.sync_client_orders(acme_client)

        assert result.updated == 1
        assert storage.get_order_by_order_id("1001").fulfillment_status == OrderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_annotated_dimensions_are_kept(self, engine, storage, acme_client, make_order, upstream):
        make_order("1001", product_details={"product_name": "Tote Bag", "dimensions": [30, 20, 5], "weight": 1.2})
        upstream.add("GET", ORDERS, (200, {"orders": [shopify_order("1001")]}))

        await engine.sync_client_orders(acme_client)

        details = storage.get_order_by_order_id("1001").product_details
        assert details["dimensions"] == [30, 20, 5]
        assert details["weight"] == 1.2
        assert details["quantity"] == 3

    @pytest.mark.asyncio
    async def test_fetch_failure_leaves_orders_alone(self, engine, storage, acme_client, make_order, upstream):
        make_order("1001", awb="AWB1")
        upstream.add("GET", ORDERS, (500, ""))

        result = await engine.sync_client_orders(acme_client)

        assert not result.success
        assert result.error == "Shopify fetch failed"
        assert storage.get_order_by_order_id("1001").awb == "AWB1"

    @pytest.mark.asyncio
    async def test_one_failing_client_does_not_stop_the_pass(self, storage, acme_client, other_client, upstream):
        def by_store(request):
            if request.url.host.startswith("acme-store"):
                return httpx.Response(503, text="down")
            return httpx.Response(200, json={"orders": [shopify_order("2002")]})

        upstream.add("GET", ORDERS, by_store)
        engine = ReconciliationEngine(storage, commerce_factory=shopify_factory(upstream))

        results = await engine.sync_all_clients()

        by_client = {r.client_id: r for r in results}
        assert not by_client["ACME001"].success
        assert by_client["OTHER002"].success
        assert storage.get_order_by_order_id("2002").client_id == "OTHER002"

    @pytest.mark.asyncio
    async def test_crashing_client_is_isolated(self, storage, acme_client, other_client, upstream):
        upstream.add("GET", ORDERS, (200, {"orders": [shopify_order("2002")]}))
        real = shopify_factory(upstream)

        def factory(client):
            if client.client_id == "ACME001":
                raise RuntimeError("bad credentials row")
            return real(client)

        results = await ReconciliationEngine(storage, commerce_factory=factory).sync_all_clients()

        assert [r.success for r in results] == [False, True]
        assert "RuntimeError" in results[0].error

    @pytest.mark.asyncio
    async def test_bad_record_is_skipped(self, engine, storage, acme_client, upstream):
        broken = shopify_order("1002", line_items=[{"title": "Odd", "quantity": "many"}])
        upstream.add("GET", ORDERS, (200, {"orders": [broken, shopify_order("1003")]}))

        result = await engine.sync_client_orders(acme_client)

        assert result.failed == 1
        assert result.created == 1
        assert storage.get_order_by_order_id("1003") is not None

    @pytest.mark.asyncio
    async def test_orders_without_id_are_not_merged_together(self, engine, storage, acme_client, upstream):
        upstream.add("GET", ORDERS, (200, {"orders": [shopify_order(None), shopify_order(None), shopify_order("1004")]}))

        result = await engine.sync_client_orders(acme_client)

        assert (result.created, result.failed) == (1, 2)
        assert storage.get_order_by_order_id("None") is None
        assert [o.order_id for o in storage.get_all_orders()] == ["1004"]


class TestShiprocketImport:
    @pytest.mark.asyncio
    async def test_matches_existing_order_by_awb(self, engine, storage, make_order, upstream):
        make_order("SHOP-1", client_id="SHIPROCKET", awb="AWB77")
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add(
            "GET",
            sr_path("/orders"),
            (200, {"data": [
                {"id": 5, "channel_order_id": "SR-5", "status": "DELIVERED", "awb_code": "AWB77"},
                {"id": 6, "channel_order_id": "SR-6", "status": "NEW"},
            ]}),
        )

        result = await engine.sync_courier_orders(pages=3)

        assert (result.created, result.updated) == (1, 1)
        assert storage.get_order_by_awb("AWB77").fulfillment_status == OrderStatus.DELIVERED
        assert storage.get_order_by_order_id("SR-6").client_id == "SHIPROCKET"
        assert upstream.count("GET", sr_path("/orders")) == 1

    @pytest.mark.asyncio
    async def test_bad_pagination_fails_the_import_cleanly(self, engine, storage, upstream):
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add("GET", sr_path("/orders"), (200, {"data": {"orders": [], "total_pages": "n/a"}}))

        result = await engine.sync_courier_orders()

        assert result.success is False
        assert "ProtocolError" in result.error
        assert storage.get_all_orders() == []

    @pytest.mark.asyncio
    async def test_numeric_fields_are_coerced(self, engine, storage, upstream):
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add(
            "GET",
            sr_path("/orders"),
            (200, {"data": [
                {"id": 7, "channel_order_id": 9007, "status": "SHIPPED", "awb_code": 123456789,
                 "products": [{"name": "Mug", "quantity": "1.5"}, {"name": "Lid", "quantity": "lots"}]},
            ]}),
        )

        result = await engine.sync_courier_orders()

        order = storage.get_order_by_order_id("9007")
        assert (result.created, result.failed) == (1, 0)
        assert order.awb == "123456789"
        assert order.product_details["quantity"] == 1

    @pytest.mark.asyncio
    async def test_unconvertible_item_is_counted_not_raised(self, engine, storage, upstream, monkeypatch):
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add(
            "GET",
            sr_path("/orders"),
            (200, {"data": [{"id": 1, "channel_order_id": "SR-1"}, {"id": 2, "channel_order_id": "SR-2"}]}),
        )
        real = reconciliation.shiprocket_order_to_order

        def flaky(raw, client_id):
            if raw["id"] == 1:
                raise AttributeError("unexpected shape")
            return real(raw, client_id)

        monkeypatch.setattr(reconciliation, "shiprocket_order_to_order", flaky)

        result = await engine.sync_courier_orders()

        assert (result.created, result.failed) == (1, 1)
        assert storage.get_order_by_order_id("SR-2") is not None


class TestStatusRefresh:
    @pytest.mark.asyncio
    async def test_refresh_updates_latest_scan(self, engine, storage, acme_client, make_order, upstream):
        make_order("1001", awb="AWB999")
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add("GET", sr_path("/courier/track/awb/AWB999"), (200, tracking_payload("RTO Delivered", "Pune Hub")))

        result = await engine.refresh_all_statuses()

        order = storage.get_order_by_order_id("1001")
        assert result.updated == 1
        assert order.delivery_status == OrderStatus.RTO
        assert order.last_scan_location == "Pune Hub"
        assert order.last_remark == "Shipment RTO Delivered"
        assert order.last_timestamp is not None

    @pytest.mark.asyncio
    async def test_one_bad_awb_does_not_stop_the_rest(self, engine, storage, acme_client, make_order, upstream):
        make_order("1", awb="GONE")
        make_order("2", awb="AWB2")
        make_order("3")
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add("GET", sr_path("/courier/track/awb/GONE"), (404, {"message": "not found"}))
        upstream.add("GET", sr_path("/courier/track/awb/AWB2"), (200, tracking_payload("Delivered")))

        result = await engine.refresh_all_statuses()

        assert (result.total, result.updated, result.not_found) == (2, 1, 1)
        assert storage.get_order_by_order_id("2").delivery_status == OrderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_once(self, engine, storage, acme_client, make_order, upstream):
        order = make_order("1001", awb="AWB1")
        upstream.add("POST", LOGIN, (200, {"token": "tok-1"}), (200, {"token": "tok-2"}))
        upstream.add(
            "GET",
            sr_path("/courier/track/awb/AWB1"),
            (401, {"message": "Token expired"}),
            (200, tracking_payload("In Transit")),
        )

        await engine.refresh_order_status(order)

        assert upstream.count("POST", LOGIN) == 2
        assert storage.get_order_by_order_id("1001").delivery_status == OrderStatus.INPROCESS

    @pytest.mark.asyncio
    async def test_second_auth_failure_needs_reconnect(self, engine, acme_client, make_order, upstream):
        order = make_order("1001", awb="AWB1")
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add("GET", sr_path("/courier/track/awb/AWB1"), (401, {"message": "Token expired"}))

        with pytest.raises(CourierReconnectRequiredError):
            await engine.refresh_order_status(order)

    @pytest.mark.asyncio
    async def test_disconnected_account_is_skipped_for_the_pass(self, engine, acme_client, make_order, upstream):
        for i in range(4):
            make_order(str(i), awb=f"AWB{i}")
        upstream.add("POST", LOGIN, (401, {"message": "bad password"}))

        result = await engine.refresh_all_statuses()

        assert result.failed == 4
        assert upstream.count("POST", LOGIN) <= 2 * engine.tracking_concurrency

    @pytest.mark.asyncio
    async def test_in_flight_requests_are_capped(self, storage, acme_client, make_order):
        for i in range(10):
            make_order(str(i), awb=f"AWB{i}")

        class SlowCourier:
            label = "slow"
            in_flight = 0
            peak = 0

            def has_credentials(self):
                return True

            def refresh_token(self):
                pass

            async def track_shipment(self, awb):
                SlowCourier.in_flight += 1
                SlowCourier.peak = max(SlowCourier.peak, SlowCourier.in_flight)
                await asyncio.sleep(0.01)
                SlowCourier.in_flight -= 1
                return TrackingResult(awb=awb, raw_status="In Transit", status=OrderStatus.INPROCESS)

        courier = SlowCourier()
        engine = ReconciliationEngine(storage, courier_factory=lambda client: courier, tracking_concurrency=3)

        result = await engine.refresh_all_statuses()

        assert result.updated == 10
        assert SlowCourier.peak <= 3

    def test_courier_client_reused_per_tenant(self, engine, acme_client, other_client):
        assert engine.courier_for(other_client) is engine.courier_for(other_client)
        assert engine.courier_for(acme_client) is engine.courier_for(None)
        assert engine.courier_for(other_client) is not engine.courier_for(None)


class TestTrackAwb:
    @pytest.mark.asyncio
    async def test_live_lookup_updates_order(self, engine, storage, acme_client, make_order, upstream):
        make_order("1001", awb="AWB1")
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add("GET", sr_path("/courier/track/awb/AWB1"), (200, tracking_payload("Out For Delivery")))

        lookup = await engine.track_awb("AWB1")

        assert lookup.source == "api"
        assert lookup.status == OrderStatus.INPROCESS
        assert lookup.to_dict()["client"]["name"] == "Acme Retail"
        assert storage.get_order_by_order_id("1001").delivery_status == OrderStatus.INPROCESS

    @pytest.mark.asyncio
    async def test_falls_back_to_database(self, engine, acme_client, make_order, upstream):
        make_order("1001", awb="AWB1", delivery_status=OrderStatus.NDR, last_scan_location="Pune")
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add("GET", sr_path("/courier/track/awb/AWB1"), (503, "down"))

        lookup = await engine.track_awb("AWB1")

        assert lookup.source == "database"
        assert lookup.status == OrderStatus.NDR
        assert lookup.to_dict()["tracking"]["last_location"] == "Pune"

    @pytest.mark.asyncio
    async def test_unknown_everywhere(self, engine, upstream):
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add("GET", sr_path("/courier/track/awb/NOPE"), (404, {"message": "not found"}))

        with pytest.raises(NotFoundError):
            await engine.track_awb("NOPE")

    @pytest.mark.asyncio
    async def test_unstored_awb_still_tracked_live(self, engine, upstream):
        upstream.add("POST", LOGIN, (200, {"token": "tok"}))
        upstream.add("GET", sr_path("/courier/track/awb/EXT1"), (200, tracking_payload("Delivered")))

        lookup = await engine.track_awb("EXT1")

        assert lookup.source == "api"
        assert lookup.to_dict()["order"] is None


class TestMergeDetails:
    def test_blank_values_never_erase(self):
        assert merge_details({"name": "Asha", "city": "Pune"}, {"name": "", "city": None, "state": "MH"}) == {
            "name": "Asha",
            "city": "Pune",
            "state": "MH",
        }

    def test_sticky_keys(self):
        merged = merge_details({"weight": 1.2}, {"weight": 0.5, "quantity": 2}, sticky=("weight",))

        assert merged == {"weight": 1.2, "quantity": 2}
