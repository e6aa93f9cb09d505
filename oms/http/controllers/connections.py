"""
Connection checks for courier and store credentials before they are saved
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from oms.auth import CallerContext, require_roles
from oms.errors import OmsError
from oms.http.requests.schemas import ShiprocketConnectionTest, ShopifyConnectionTest
from oms.models import Client, UserRole
from oms.services.credentials import encrypt_token
from oms.services.shiprocket_service import ShiprocketService, get_shiprocket_client
from oms.services.shopify_service import ShopifyService

logger = logging.getLogger(__name__)

router = APIRouter()

CONNECTION_MANAGERS = (UserRole.BFAST_ADMIN, UserRole.CLIENT_ADMIN)


@router.post("/test-shiprocket", response_model=dict)
async def test_shiprocket(
    request: ShiprocketConnectionTest,
    current_user: CallerContext = Depends(require_roles(*CONNECTION_MANAGERS)),
):
    """Try a Shiprocket login with the given credentials (or the shared account when none are given)"""
    if request.email or request.password or request.api_key:
        service = ShiprocketService(
            email=request.email,
            password=request.password,
            api_key=request.api_key,
            label=f"test:{current_user.username}",
        )
    else:
        service = get_shiprocket_client()
    if not service.has_credentials():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email and password, or an API key, are required")
    try:
        ok = await service.test_authentication()
    except OmsError as e:
        logger.warning("Shiprocket connection test errored: %s", e)
        ok = False
    return {
        "success": ok,
        "message": "Shiprocket connection successful" if ok else "Shiprocket login failed; check the credentials",
    }


@router.post("/test-shopify", response_model=dict)
async def test_shopify(
    request: ShopifyConnectionTest,
    current_user: CallerContext = Depends(require_roles(*CONNECTION_MANAGERS)),
):
    """Call /shop.json with the given store credentials"""
    if not request.access_token and not (request.api_key and request.api_secret):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Access token, or API key and secret, are required")
    # Transient row, never added to a session
    client = Client(
        client_id=current_user.client_id or "connection-test",
        client_name="connection-test",
        shopify_store_id=request.store_id,
        shopify_api_key=request.api_key,
        shopify_api_secret=encrypt_token(request.api_secret),
        shopify_access_token=encrypt_token(request.access_token),
    )
    ok = await ShopifyService(client, max_retries=0).test_connection()
    return {
        "success": ok,
        "message": "Shopify connection successful" if ok else "Shopify store did not accept the credentials",
    }
