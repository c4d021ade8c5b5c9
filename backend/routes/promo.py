"""Promo code signup - POST /api/promo-signup grants lifetime access for a valid code."""
from fastapi import APIRouter
import logging

from models import PromoSignupRequest
from services.promo_service import redeem_promo_code

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["promo"])


@router.post("/promo-signup")
async def promo_signup(request: PromoSignupRequest):
    return await redeem_promo_code(str(request.email), request.promo_code, name=request.name)
