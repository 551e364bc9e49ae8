"""Generation endpoint — access decision, generation call, then the charge."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from config.settings import get_settings
from src.api.deps import get_credentials, get_decision, get_generator, require_access
from src.api.models.schemas import GenerateRequest, GenerateResponse, UsageOut
from src.core.interfaces import ContentGenerator
from src.core.logging import get_logger
from src.core.types import AccessContext, Credentials
from src.saas.decision import AccessDecision

log = get_logger(__name__)

router = APIRouter(tags=["generate"])


@router.post("/generate", response_model=GenerateResponse)
async def generate(
    body: GenerateRequest,
    context: AccessContext = Depends(require_access),
    credentials: Credentials = Depends(get_credentials),
    decision: AccessDecision = Depends(get_decision),
    generator: ContentGenerator = Depends(get_generator),
) -> GenerateResponse:
    """Nothing is charged unless the generator returns a result."""
    verdict = await decision.enforce(context)
    result = await generator.generate(body.prompt)
    receipt = await decision.commit(
        context,
        verdict,
        tokens=get_settings().tokens_per_generation,
        wp_user_id=credentials.wp_user_id,
        wp_user_name=credentials.wp_user_name,
    )
    log.info(
        "generation_served",
        auth_method=context.auth_method.value,
        charge=receipt.charge.value if receipt.charge else None,
    )
    return GenerateResponse(
        text=result.text,
        charge=receipt.charge.value if receipt.charge else None,
        usage=UsageOut.from_usage(receipt.usage) if receipt.usage else None,
        credits_balance=receipt.credits_balance,
    )
