from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from invitemarket.api.deps import get_cipher, get_signature_policy
from invitemarket.core.config import settings
from invitemarket.core.crypto import SecretCipher
from invitemarket.core.db import get_db
from invitemarket.schemas.sales import (
    BuyerPurchasesOut,
    Pagination,
    RevealRequest,
    SalesPageOut,
    SellerStats,
    SellerStatsOut,
)
from invitemarket.services.sales import buyer_purchases, list_sales, reveal_purchase, seller_stats, to_sale_out
from invitemarket.services.signature import SignaturePolicy, format_price

router = APIRouter()


@router.get("/sales", response_model=SalesPageOut)
async def get_sales(
    slug: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> SalesPageOut:
    rows, total = await list_sales(db=db, chain_id=settings.chain_id, slug=slug, limit=limit, skip=skip)
    return SalesPageOut(
        transactions=[to_sale_out(r) for r in rows],
        pagination=Pagination(total=total, limit=limit, skip=skip, has_more=skip + len(rows) < total),
    )


@router.get("/sellers/{address}/stats", response_model=SellerStatsOut)
async def get_seller_stats(address: str, db: AsyncSession = Depends(get_db)) -> SellerStatsOut:
    count, revenue = await seller_stats(db=db, seller_address=address, chain_id=settings.chain_id)
    return SellerStatsOut(stats=SellerStats(sales_count=count, total_revenue=format_price(revenue)))


@router.get("/buyers/{address}/purchases", response_model=BuyerPurchasesOut)
async def get_buyer_purchases(address: str, db: AsyncSession = Depends(get_db)) -> BuyerPurchasesOut:
    rows = await buyer_purchases(db=db, buyer_address=address, chain_id=settings.chain_id)
    return BuyerPurchasesOut(purchases=[to_sale_out(r) for r in rows])


@router.post("/buyers/reveal")
async def reveal(
    payload: RevealRequest,
    db: AsyncSession = Depends(get_db),
    cipher: SecretCipher = Depends(get_cipher),
    policy: SignaturePolicy = Depends(get_signature_policy),
) -> dict:
    return await reveal_purchase(
        db=db,
        cipher=cipher,
        transaction_id=payload.transaction_id,
        encoded_message=payload.message,
        signature=payload.signature,
        chain_id=settings.chain_id,
        policy=policy,
    )
