SURVEY_INVITATION = (
    "🔔 Time for a short survey!\n\n"
    "It only takes 2-3 minutes. Tell us how you feel right now."
)

# 升级提醒按级别递增紧迫感，正文后仍附带 SURVEY_INVITATION 的第二段
ESCALATION_MESSAGES = {
    1: "⏰ Friendly reminder: a survey is waiting for you.",
    2: "⚠️ We still haven't heard from you. Please take two minutes now.",
    3: "🚨 This moment is slipping away. Please answer the survey right now!",
}

ESCALATION_FOLLOWUP = "It only takes 2-3 minutes. Tell us how you feel right now."

# (按钮文字, callback_data 前缀)，callback_data 最终为 "<前缀>_<prompt_id>"
RESPONSE_OPTIONS = [
    ("📝 Start survey", "start_survey"),
    ("🚫 Skip", "skip_survey"),
]

__all__ = ["SURVEY_INVITATION", "ESCALATION_MESSAGES", "ESCALATION_FOLLOWUP", "RESPONSE_OPTIONS"]
