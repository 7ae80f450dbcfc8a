"""合规判定路由

POST /api/compliance/check: 判定当前能否通过指定渠道联系线索。
人工"预约看房"等流程在联系线索前调用，与调度器使用同一套规则。
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from rentfinder.core.compliance import ComplianceGate
from rentfinder.core.exceptions import InvalidPolicyError, LeadNotFoundError
from rentfinder.core.models import ActionType, AgentType, MessageType, message_type_for
from starlette.responses import JSONResponse

from ..deps import get_compliance_gate

router = APIRouter()


class ComplianceCheckRequest(BaseModel):
    """合规判定请求体"""

    lead_id: str
    channel: ActionType
    message_type: MessageType | None = Field(default=None, description="显式指定消息性质")
    agent_type: AgentType | None = Field(default=None, description="按智能体推导消息性质")

    def effective_message_type(self) -> MessageType:
        if self.message_type is not None:
            return self.message_type
        if self.agent_type is not None:
            return message_type_for(self.agent_type)
        return MessageType.MARKETING


@router.post("/api/compliance/check")
async def check_compliance(
    body: ComplianceCheckRequest,
    gate: ComplianceGate = Depends(get_compliance_gate),
):
    """返回 ComplianceDecision"""
    try:
        decision = await gate.check_lead(body.lead_id, body.channel, body.effective_message_type())
    except LeadNotFoundError:
        return JSONResponse(
            status_code=404,
            content={
                "error": {
                    "code": "LEAD_NOT_FOUND",
                    "message": f"Lead with id {body.lead_id} does not exist",
                }
            },
        )
    except InvalidPolicyError as e:
        return JSONResponse(
            status_code=422,
            content={"error": {"code": "INVALID_POLICY", "message": str(e)}},
        )
    return decision.model_dump(mode="json")
