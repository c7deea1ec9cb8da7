# =============================================================================
# Compliance Calendar — Requirement Registry and Deadline Calculation
# =============================================================================
#
# Reference data for the Compliance Advisor agent and the /reference
# endpoints: federal, state (CA, NY, TX) and industry (healthcare,
# construction, financial) filing requirements.
#
# DEADLINE TYPES:
#   fixed     — same month/day every year: this year's date if it has not
#               passed, else next year's
#   recurring — quarterly: the next of the listed month/day dates (day is
#               clamped to the month's length, so "April 31" is April 30)
#   relative  — depends on an event (hire date, filing event); no calendar
#               date, next_deadline is None
# =============================================================================

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta

logger = logging.getLogger(__name__)

QUARTERLY_MONTHS = (4, 7, 10, 1)


@dataclass(frozen=True)
class ComplianceRequirement:
    id: str
    name: str
    description: str
    applies_to: tuple[str, ...]
    regions: tuple[str, ...]
    deadline_type: str                      # fixed | recurring | relative
    deadline_details: dict = field(default_factory=dict, hash=False)
    employee_threshold: int | None = None
    reference_url: str | None = None
    penalties: str | None = None


FEDERAL_REQUIREMENTS: tuple[ComplianceRequirement, ...] = (
    ComplianceRequirement(
        id="fed-941",
        name="Form 941 - Employer's Quarterly Federal Tax Return",
        description="Employers who withhold income taxes, social security tax, "
                    "or Medicare tax from employee paychecks, or who must pay "
                    "the employer's portion of social security or Medicare tax.",
        applies_to=("all",),
        regions=("US",),
        deadline_type="recurring",
        deadline_details={"frequency": "quarterly",
                          "months": list(QUARTERLY_MONTHS), "day": 31},
        reference_url="https://www.irs.gov/forms-pubs/about-form-941",
        penalties="Penalties vary based on how late the filing is, ranging "
                  "from 2% to 15% of the unpaid tax.",
    ),
    ComplianceRequirement(
        id="fed-940",
        name="Form 940 - Employer's Annual Federal Unemployment Tax Return",
        description="Employers who paid wages of $1,500 or more in any calendar "
                    "quarter, or had one or more employees in any 20 or more "
                    "different weeks.",
        applies_to=("all",),
        regions=("US",),
        deadline_type="fixed",
        deadline_details={"month": 1, "day": 31},
        reference_url="https://www.irs.gov/forms-pubs/about-form-940",
        penalties="5% of the unpaid tax for each month or part of a month the "
                  "return is late, up to 25%.",
    ),
    ComplianceRequirement(
        id="fed-w2",
        name="Form W-2 - Wage and Tax Statement",
        description="Employers must provide W-2 forms to their employees and "
                    "the Social Security Administration.",
        applies_to=("all",),
        regions=("US",),
        deadline_type="fixed",
        deadline_details={"month": 1, "day": 31},
        reference_url="https://www.irs.gov/forms-pubs/about-form-w-2",
        penalties="Penalties range from $50 to $280 per form, depending on how "
                  "late the filing is.",
    ),
    ComplianceRequirement(
        id="fed-aca",
        name="Affordable Care Act Reporting (Forms 1094-C and 1095-C)",
        description="Applicable Large Employers must report information about "
                    "health insurance coverage offered to full-time employees.",
        applies_to=("ale",),
        regions=("US",),
        deadline_type="fixed",
        deadline_details={"month": 2, "day": 28},
        employee_threshold=50,
        reference_url="https://www.irs.gov/affordable-care-act/employers/"
                      "information-reporting-by-applicable-large-employers",
        penalties="Penalties range from $50 to $280 per form, depending on how "
                  "late the filing is.",
    ),
    ComplianceRequirement(
        id="fed-eeo1",
        name="EEO-1 Report",
        description="Private employers with 100+ employees and federal "
                    "contractors with 50+ employees must file annual EEO-1 "
                    "reports with the EEOC.",
        applies_to=("private", "federal-contractor"),
        regions=("US",),
        deadline_type="fixed",
        deadline_details={"month": 3, "day": 31},
        employee_threshold=50,
        reference_url="https://www.eeoc.gov/employers/eeo-1-data-collection",
        penalties="Potential loss of federal contracts and other legal actions.",
    ),
)

STATE_REQUIREMENTS: dict[str, tuple[ComplianceRequirement, ...]] = {
    "CA": (
        ComplianceRequirement(
            id="ca-de9",
            name="DE 9 - Quarterly Contribution Return and Report of Wages",
            description="California employers file quarterly to report wages "
                        "and pay unemployment insurance taxes.",
            applies_to=("all",),
            regions=("CA",),
            deadline_type="recurring",
            deadline_details={"frequency": "quarterly",
                              "months": list(QUARTERLY_MONTHS), "day": 31},
            reference_url="https://edd.ca.gov/en/Payroll_Taxes/Forms_and_Publications",
            penalties="Penalties of 10% plus interest on late payments.",
        ),
        ComplianceRequirement(
            id="ca-cpra",
            name="California Pay Data Reporting",
            description="Private employers with 100+ employees submit pay data "
                        "reports to the California Civil Rights Department.",
            applies_to=("private",),
            regions=("CA",),
            deadline_type="fixed",
            deadline_details={"month": 5, "day": 10},
            employee_threshold=100,
            reference_url="https://calcivilrights.ca.gov/paydatareporting/",
            penalties="Up to $100 per employee for an initial violation and up "
                      "to $200 per employee for subsequent violations.",
        ),
    ),
    "NY": (
        ComplianceRequirement(
            id="ny-nys45",
            name="NYS-45 - Quarterly Combined Withholding, Wage Reporting, and "
                 "Unemployment Insurance Return",
            description="New York employers file quarterly to report wages and "
                        "pay withholding and unemployment insurance taxes.",
            applies_to=("all",),
            regions=("NY",),
            deadline_type="recurring",
            deadline_details={"frequency": "quarterly",
                              "months": list(QUARTERLY_MONTHS), "day": 31},
            reference_url="https://www.tax.ny.gov/bus/ads/efile_addnys45_info.htm",
            penalties="Up to 10% of the taxes due plus interest.",
        ),
    ),
    "TX": (
        ComplianceRequirement(
            id="tx-c3",
            name="Form C-3 - Employer's Quarterly Report",
            description="Texas employers file quarterly to report wages and pay "
                        "unemployment insurance taxes.",
            applies_to=("all",),
            regions=("TX",),
            deadline_type="recurring",
            deadline_details={"frequency": "quarterly",
                              "months": list(QUARTERLY_MONTHS), "day": 31},
            reference_url="https://www.twc.texas.gov/businesses/"
                          "unemployment-tax-registration",
            penalties="Late reporting penalties of $15 plus interest.",
        ),
    ),
}

INDUSTRY_REQUIREMENTS: dict[str, tuple[ComplianceRequirement, ...]] = {
    "healthcare": (
        ComplianceRequirement(
            id="hipaa-training",
            name="Annual HIPAA Training",
            description="Healthcare organizations provide annual HIPAA training "
                        "to all employees who handle protected health "
                        "information.",
            applies_to=("healthcare",),
            regions=("US",),
            deadline_type="relative",
            deadline_details={"based_on": "hire_date", "recurring": True,
                              "frequency": "yearly"},
            reference_url="https://www.hhs.gov/hipaa/for-professionals/"
                          "training/index.html",
            penalties="$100 to $50,000 per violation.",
        ),
    ),
    "construction": (
        ComplianceRequirement(
            id="osha-300a",
            name="OSHA Form 300A - Summary of Work-Related Injuries and Illnesses",
            description="Construction companies with 10+ employees post this "
                        "form from February 1 to April 30 each year.",
            applies_to=("construction",),
            regions=("US",),
            deadline_type="fixed",
            deadline_details={"month": 2, "day": 1},
            employee_threshold=10,
            reference_url="https://www.osha.gov/recordkeeping/forms",
            penalties="Up to $14,502 per serious violation.",
        ),
    ),
    "financial": (
        ComplianceRequirement(
            id="finra-u4",
            name="Form U4 Updates",
            description="Financial firms update Form U4 for registered "
                        "representatives within 30 days of a reportable event.",
            applies_to=("financial",),
            regions=("US",),
            deadline_type="relative",
            deadline_details={"based_on": "event_date", "days": 30},
            reference_url="https://www.finra.org/registration-exams-ce/"
                          "classic-crd/forms",
            penalties="$5,000 to $10,000 per late filing.",
        ),
    ),
}


def all_requirements() -> list[ComplianceRequirement]:
    reqs = list(FEDERAL_REQUIREMENTS)
    for group in (*STATE_REQUIREMENTS.values(), *INDUSTRY_REQUIREMENTS.values()):
        reqs.extend(group)
    return reqs


def find_requirement(requirement_id: str) -> ComplianceRequirement | None:
    return next((r for r in all_requirements() if r.id == requirement_id), None)


# ---------------------------------------------------------------------------
# Deadlines
# ---------------------------------------------------------------------------


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def calculate_next_deadline(
    requirement: ComplianceRequirement,
    today: date | None = None,
) -> date | None:
    """
    Next calendar deadline on or after `today`, or None for relative
    requirements and unsupported recurring frequencies.
    """
    today = today or date.today()
    details = requirement.deadline_details

    if requirement.deadline_type == "fixed":
        deadline = _clamped(today.year, details["month"], details["day"])
        if deadline < today:
            deadline = _clamped(today.year + 1, details["month"], details["day"])
        return deadline

    if requirement.deadline_type == "recurring":
        if details.get("frequency") != "quarterly":
            return None
        candidates = [
            _clamped(year, month, details["day"])
            for year in (today.year, today.year + 1)
            for month in details["months"]
        ]
        return min(d for d in candidates if d >= today)

    return None


def categorize_requirement(requirement_id: str) -> str:
    """Coarse category used to filter the deadline calendar."""
    if any(tag in requirement_id for tag in ("941", "940", "w2", "de9", "nys45", "c3")):
        return "tax"
    if "aca" in requirement_id or "hipaa" in requirement_id:
        return "benefits"
    if any(tag in requirement_id for tag in ("eeo", "pay-data", "cpra")):
        return "reporting"
    if "osha" in requirement_id:
        return "safety"
    return "general"


def _applies(requirement: ComplianceRequirement, employee_count: int | None) -> bool:
    if requirement.employee_threshold is None or employee_count is None:
        return True
    return employee_count >= requirement.employee_threshold


def get_compliance_requirements(
    state: str | None = None,
    employee_count: int | None = None,
    industry: str | None = None,
    include_details: bool = True,
    today: date | None = None,
) -> list[dict]:
    """
    Requirements that apply to a company profile.

    Federal requirements always apply (subject to employee thresholds);
    state and industry requirements are added when they are known. An
    unknown employee count does not filter anything out.
    """
    candidates = list(FEDERAL_REQUIREMENTS)
    if state:
        candidates.extend(STATE_REQUIREMENTS.get(state.upper(), ()))
    if industry:
        candidates.extend(INDUSTRY_REQUIREMENTS.get(industry.lower(), ()))

    results = []
    for req in candidates:
        if not _applies(req, employee_count):
            continue
        next_deadline = calculate_next_deadline(req, today)
        item = {
            "id": req.id,
            "name": req.name,
            "category": categorize_requirement(req.id),
            "next_deadline": next_deadline.isoformat() if next_deadline else None,
        }
        if include_details:
            item.update({
                "description": req.description,
                "deadline_type": req.deadline_type,
                "deadline_details": req.deadline_details,
                "employee_threshold": req.employee_threshold,
                "reference_url": req.reference_url,
                "penalties": req.penalties,
            })
        results.append(item)
    return results


def get_upcoming_deadlines(
    state: str | None = None,
    days_ahead: int = 30,
    category: str | None = None,
    today: date | None = None,
) -> list[dict]:
    """
    Deadlines falling in [today, today + days_ahead], nearest first.

    With a state, only that state's requirements are included; without one,
    every state's are. Industry requirements are always included.
    """
    today = today or date.today()
    end = today + timedelta(days=days_ahead)

    reqs = list(FEDERAL_REQUIREMENTS)
    if state:
        reqs.extend(STATE_REQUIREMENTS.get(state.upper(), ()))
    else:
        for group in STATE_REQUIREMENTS.values():
            reqs.extend(group)
    for group in INDUSTRY_REQUIREMENTS.values():
        reqs.extend(group)

    deadlines = []
    for req in reqs:
        deadline = calculate_next_deadline(req, today)
        if deadline is None or not (today <= deadline <= end):
            continue
        req_category = categorize_requirement(req.id)
        if category and req_category != category:
            continue
        deadlines.append({
            "requirement_id": req.id,
            "requirement_name": req.name,
            "deadline_date": deadline.isoformat(),
            "days_until": (deadline - today).days,
            "category": req_category,
        })

    deadlines.sort(key=lambda d: (d["deadline_date"], d["requirement_id"]))
    logger.debug(
        "%d deadlines within %d days (state=%s, category=%s)",
        len(deadlines), days_ahead, state, category,
    )
    return deadlines
