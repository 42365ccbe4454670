from fastapi import APIRouter, Depends

from ..deps import Services, get_services, get_user_id
from ..schemas import BalanceRead, EstimateRead, EstimateRequest

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.get("/balance", response_model=BalanceRead)
async def get_balance(user_id: str = Depends(get_user_id), services: Services = Depends(get_services)):
    usage = await services.ledger.get_user_usage(user_id)
    return {
        "free_usage_count": usage["freeUsageCount"],
        "free_usage_limit": usage["freeUsageLimit"],
        "remaining_free_count": usage["remainingFreeCount"],
        "balance": await services.ledger.get_balance(user_id),
    }


@router.post("/estimate", response_model=EstimateRead)
async def estimate(body: EstimateRequest, user_id: str = Depends(get_user_id),
                   services: Services = Depends(get_services)):
    pages = [p.model_dump() for p in body.pages]
    total = await services.ledger.calculate_total_power(pages)
    free = await services.ledger.has_free_usage(user_id)
    return {
        "total_power": total,
        "page_count": len(pages),
        "covered_by_free_usage": free,
        "sufficient": free or await services.ledger.has_sufficient_balance(user_id, total),
    }
