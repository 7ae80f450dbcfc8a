"""外呼内容生成 -- 按智能体类型渲染短信正文、邮件标题/正文、语音外呼脚本

HTML 邮件渲染不在此处，邮件只发送纯文本。
营销活动的正文与脚本由活动本身提供，缺失时视为永久失败。
"""

from rentfinder.core.models.enums import AgentType
from rentfinder.core.models.lead import Lead
from rentfinder.core.models.task import Task

from .exceptions import MissingContextFieldError

_STOP_FOOTER = "\n\nReply STOP to unsubscribe."


def _first_name(lead: Lead) -> str:
    name = (lead.full_name or "").strip()
    return name.split()[0] if name else "there"


def _property_label(task: Task) -> str:
    address = getattr(task.context, "property_address", None)
    return address or "the property"


def _showing_time_label(task: Task) -> str:
    showing_time = getattr(task.context, "showing_time", None)
    if showing_time is None:
        return "your scheduled time"
    return showing_time.strftime("%A, %B %d at %I:%M %p")


def render_sms(task: Task, lead: Lead) -> str:
    """渲染短信正文"""
    name = _first_name(lead)
    prop = _property_label(task)
    match task.agent_type:
        case AgentType.SHOWING_CONFIRMATION:
            text = (
                f"Hi {name}! This is a reminder of your showing at {prop} on "
                f"{_showing_time_label(task)}. Reply YES to confirm or call us to reschedule."
            )
        case AgentType.NO_SHOW_FOLLOW_UP:
            text = (
                f"Hi {name}, we missed you at {prop} today. "
                "Would you like to reschedule your showing? Just reply to this message."
            )
        case AgentType.POST_SHOWING:
            text = (
                f"Hi {name}, thanks for visiting {prop}! "
                "Any questions, or ready to apply? Reply here and we'll help."
            )
        case AgentType.RECAPTURE:
            text = (
                f"Hi {name}, are you still looking for a home? "
                "We have new listings that may be a fit. Reply to hear more."
            )
        case AgentType.WELCOME_SEQUENCE:
            text = (
                f"Hi {name}! Thanks for your interest in {prop}. "
                "A team member will reach out shortly to help you find the perfect home!"
            )
        case AgentType.CAMPAIGN:
            text = _campaign_field(task, "message_body")
    return text + _STOP_FOOTER


def render_email(task: Task, lead: Lead) -> tuple[str, str]:
    """渲染邮件 (subject, text)"""
    name = _first_name(lead)
    prop = _property_label(task)
    if task.agent_type == AgentType.CAMPAIGN:
        body = _campaign_field(task, "message_body")
        return getattr(task.context, "subject", None) or "An update from your leasing team", body

    subjects = {
        AgentType.SHOWING_CONFIRMATION: f"Your showing at {prop}",
        AgentType.NO_SHOW_FOLLOW_UP: f"We missed you at {prop}",
        AgentType.POST_SHOWING: f"Thanks for visiting {prop}",
        AgentType.RECAPTURE: "Still looking for your next home?",
        AgentType.WELCOME_SEQUENCE: "Welcome! Let's find your next home",
    }
    body = f"Hi {name},\n\n" + render_sms(task, lead).removesuffix(_STOP_FOOTER)
    return subjects[task.agent_type], body


def render_voice_task(task: Task, lead: Lead) -> str:
    """渲染语音外呼任务提示词（交给语音智能体执行）"""
    name = lead.full_name or "the lead"
    prop = _property_label(task)
    match task.agent_type:
        case AgentType.SHOWING_CONFIRMATION:
            return (
                f"You are calling {name} to confirm their property showing at {prop} "
                f"on {_showing_time_label(task)}. Ask whether they can still attend. "
                "If not, offer to reschedule. Keep the call brief and friendly."
            )
        case AgentType.NO_SHOW_FOLLOW_UP:
            return (
                f"You are calling {name}, who missed a scheduled showing at {prop}. "
                "Ask if everything is okay and whether they would like to reschedule."
            )
        case AgentType.POST_SHOWING:
            return (
                f"You are calling {name} after their showing at {prop}. "
                "Ask how the visit went, answer questions, and explain how to apply."
            )
        case AgentType.RECAPTURE:
            return (
                f"You are calling {name}, a rental lead who has gone quiet. "
                "Ask if they are still looking for a home and what they need."
            )
        case AgentType.WELCOME_SEQUENCE:
            return (
                f"You are calling {name} to welcome them after they inquired about {prop}. "
                "Introduce the leasing team and offer to schedule a showing."
            )
        case AgentType.CAMPAIGN:
            return _campaign_field(task, "voice_script")


def _campaign_field(task: Task, field: str) -> str:
    value = getattr(task.context, field, None)
    if not value:
        raise MissingContextFieldError(task.agent_type.value, field)
    return value
