"""Default reference data for a fresh installation."""

from __future__ import annotations

from typing import Any

MAIN_LEAD_FLOW = "Main Lead Flow"
DID_NOT_HIRE = "Did Not Hire"

_FINAL_FOLLOW_UP = "Final follow-up call—if no answer, send final text and close the matter."

DEFAULT_STAGES: dict[str, list[str]] = {
    MAIN_LEAD_FLOW: [
        "Fresh Leads",
        "Pending Contact",
        "Pending Intake Completion",
        "Scheduled Discovery Call",
        "Pending I/V",
        "Scheduled I/V",
        "Cancelled/No Show I/V",
        "Pending Engagement Lvl 1",
        "Pending Engagement Lvl 2 and 3",
        "Scheduled Design",
        "Cancelled/No Show Design",
        "Engaged",
    ],
    DID_NOT_HIRE: [
        "Follow-Up Completed: Pending Intake",
        "Rejected Lead - due to bad behavior",
        "Rejected Lead - Not Qualified",
        "Outside Practice Area / Service Not Offered",
        "Not Ready to Move Forward",
        "Conflict Issue",
        "Cost Concerns",
        "Service No Longer Needed",
        "Hired Other Attorney",
        "Others",
        "Not a Fit",
        "Rejected Lead – Rush Request",
        "Archived Lead from ActionStep",
        "Rejected Lead – Did Not Want Document Changes",
        "Location Concern",
        "INTERNAL/NOT A LEAD",
        "No Show / Canceled Webinar",
        "Client Experience Detractor",
        "Language Barrier",
        "BNI Lead – No Contact",
        "Lead Chose Not to Proceed",
        "Invalid Lead",
        "Follow-up Completed : Pending I/V",
        "Follow-up Completed : No Show / Canceled I/V",
        "Follow-up Completed : Did Not Engage Post-I/V or Post-Quotation",
        "Follow-up Completed : Pending Contact",
    ],
}


def _template(
    stage_name: str,
    task_number: int,
    task_name: str,
    task_description: str,
    due_date_value: int,
    priority: str,
    due_date_unit: str = "days",
) -> dict[str, Any]:
    return {
        "stage_name": stage_name,
        "task_number": task_number,
        "task_name": task_name,
        "task_description": task_description,
        "due_date_value": due_date_value,
        "due_date_unit": due_date_unit,
        "priority": priority,
    }


DEFAULT_TASK_TEMPLATES: list[dict[str, Any]] = [
    _template("Fresh Leads", 1, "Initial contact attempt - call", "Make first contact attempt via phone call", 0, "High"),
    _template(
        "Fresh Leads",
        2,
        "Send welcome text/email",
        "If no answer, send introductory text or email",
        30,
        "Medium",
        due_date_unit="minutes",
    ),
    _template("Fresh Leads", 3, "Second contact attempt", "Follow up call attempt", 1, "Medium"),
    _template("Fresh Leads", 4, "Third contact attempt", "Final attempt to reach lead", 2, "Medium"),
    _template("Fresh Leads", 5, _FINAL_FOLLOW_UP, "Final follow-up attempt before closing", 4, "High"),
    _template("Pending Contact", 1, "Schedule discovery call", "Reach out to schedule a discovery call", 0, "High"),
    _template("Pending Contact", 2, "Follow-up if no response", "Second attempt to contact lead", 2, "Medium"),
    _template("Pending Contact", 3, _FINAL_FOLLOW_UP, "Final follow-up call before closing the matter", 5, "High"),
    _template("Pending Intake Completion", 1, "Send intake form reminder", "Remind the lead to finish the intake form", 1, "Medium"),
    _template("Pending Intake Completion", 2, "Follow up on incomplete intake", "Call about missing intake details", 3, "Medium"),
    _template("Pending Intake Completion", 3, _FINAL_FOLLOW_UP, "Final follow-up on intake before closing", 7, "High"),
    _template("Scheduled Discovery Call", 1, "Send appointment confirmation", "Confirm the discovery call details", 0, "High"),
    _template("Scheduled Discovery Call", 2, "Send appointment reminder (24 hrs)", "Remind the lead a day ahead", 1, "Medium"),
    _template("Pending I/V", 1, "Schedule Initial Visit", "Book the initial visit with the attorney", 0, "High"),
    _template("Pending I/V", 2, "Follow up on I/V scheduling", "Chase the lead for an I/V slot", 2, "Medium"),
    _template("Pending I/V", 3, _FINAL_FOLLOW_UP, "Final follow-up on I/V scheduling", 5, "High"),
    _template("Scheduled I/V", 1, "Review intake and prepare for I/V", "Prepare the file for the initial visit", 0, "High"),
    _template("Scheduled I/V", 2, "Send I/V reminder", "Remind the lead of the initial visit", 1, "Medium"),
    _template("Cancelled/No Show I/V", 1, "Contact to reschedule I/V", "Reach out to rebook the initial visit", 0, "High"),
    _template("Cancelled/No Show I/V", 2, "Second reschedule attempt", "Second attempt to rebook the I/V", 2, "Medium"),
    _template("Cancelled/No Show I/V", 3, _FINAL_FOLLOW_UP, "Final attempt to rebook the I/V", 5, "High"),
    _template("Pending Engagement Lvl 1", 1, "Send engagement agreement Lvl 1", "Send the level 1 engagement agreement", 0, "High"),
    _template("Pending Engagement Lvl 1", 2, "Follow up on engagement agreement", "Check on the unsigned agreement", 2, "Medium"),
    _template("Pending Engagement Lvl 1", 3, _FINAL_FOLLOW_UP, "Final follow-up on the engagement agreement", 7, "High"),
    _template(
        "Pending Engagement Lvl 2 and 3",
        1,
        "Send engagement agreement Lvl 2/3",
        "Send the level 2/3 engagement agreement",
        0,
        "High",
    ),
    _template("Pending Engagement Lvl 2 and 3", 2, "Follow up on engagement agreement", "Check on the unsigned agreement", 2, "Medium"),
    _template("Pending Engagement Lvl 2 and 3", 3, _FINAL_FOLLOW_UP, "Final follow-up on the engagement agreement", 7, "High"),
    _template("Scheduled Design", 1, "Prepare design documents", "Prepare documents for the design meeting", 0, "High"),
    _template("Scheduled Design", 2, "Send design meeting reminder", "Remind the client of the design meeting", 1, "Medium"),
    _template("Cancelled/No Show Design", 1, "Contact to reschedule design meeting", "Reach out to rebook the design meeting", 0, "High"),
    _template("Cancelled/No Show Design", 2, "Second reschedule attempt", "Follow-up attempt to reschedule design meeting", 2, "Medium"),
    _template("Engaged", 1, "Send welcome packet", "Send welcome email with next steps and timeline", 0, "High"),
    _template("Engaged", 2, "Schedule kickoff meeting", "Schedule initial planning meeting with client", 1, "Medium"),
]


DEFAULT_COMPLETION_MAPPINGS: list[tuple[str, str]] = [
    ("Pending Contact", "Follow-up Completed : Pending Contact"),
    ("Pending Intake Completion", "Follow-Up Completed: Pending Intake"),
    ("Pending I/V", "Follow-up Completed : Pending I/V"),
    ("Cancelled/No Show I/V", "Follow-up Completed : No Show / Canceled I/V"),
    ("Pending Engagement Lvl 1", "Follow-up Completed : Did Not Engage Post-I/V or Post-Quotation"),
    ("Pending Engagement Lvl 2 and 3", "Follow-up Completed : Did Not Engage Post-I/V or Post-Quotation"),
    ("Cancelled/No Show Design", "Follow-up Completed : Did Not Engage Post-I/V or Post-Quotation"),
]
