from typing import Annotated, Any

from fastapi import APIRouter, Depends

from budgetbuddy.api.dependencies import get_rule_service
from budgetbuddy.api.schemas import PatternTestRequest, PatternTestResponse
from budgetbuddy.models import Rule, RuleCreateRequest, RuleUpdateRequest, YnabCategory
from budgetbuddy.services.rules import RuleService

router = APIRouter(prefix="/api/rules")

Rules = Annotated[RuleService, Depends(get_rule_service)]


@router.get("")
async def list_rules(service: Rules) -> list[Rule]:
    return service.list_rules()


@router.post("", status_code=201)
async def create_rule(req: RuleCreateRequest, service: Rules) -> Rule:
    return await service.create_rule(req)


@router.post("/test-pattern")
async def test_pattern(req: PatternTestRequest, service: Rules) -> PatternTestResponse:
    matches = service.check_pattern(
        req.pattern,
        req.pattern_type,
        req.target_field,
        payee=req.payee,
        memo=req.memo,
    )
    return PatternTestResponse(matches=matches)


@router.get("/export")
async def export_rules(service: Rules) -> list[dict[str, Any]]:
    return service.export_rules()


@router.post("/import")
async def import_rules(payload: list[dict[str, Any]], service: Rules) -> dict[str, Any]:
    return await service.import_rules(payload)


@router.get("/categories")
async def list_categories(service: Rules) -> list[YnabCategory]:
    return await service.list_categories()


@router.get("/{rule_id}")
async def get_rule(rule_id: str, service: Rules) -> Rule:
    return service.get_rule(rule_id)


@router.put("/{rule_id}")
async def update_rule(rule_id: str, req: RuleUpdateRequest, service: Rules) -> Rule:
    return await service.update_rule(rule_id, req)


@router.delete("/{rule_id}")
async def delete_rule(rule_id: str, service: Rules) -> dict[str, str]:
    service.delete_rule(rule_id)
    return {"status": "deleted"}
