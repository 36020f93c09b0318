"""Charter store: immutable, versioned configuration for each conversation flow.

A charter carries the persona (meta), the rules handed to the decision oracle
for package discovery and variant matching, and the ordered consultation
phases the runner steps a user through. Nothing in here changes at runtime;
handlers receive a charter as a parameter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Tuple, Union

Validator = Callable[[str], Union[bool, str]]
OptionList = Union[Tuple[str, ...], Tuple[Tuple[str, ...], ...]]

NONE_SERVICE_OPTION = "None - skip launch services"
GROUPED = "grouped"


@dataclass(frozen=True)
class ConsultationStep:
    """One question in a consultation phase."""
    id: str
    question: str
    options: Optional[OptionList] = None
    multiple: Union[bool, str, None] = None
    validator: Optional[Validator] = None


@dataclass(frozen=True)
class ConsultationPhase:
    """Ordered question list plus the mission statement for the phase."""
    key: str
    mission: str
    steps: Tuple[ConsultationStep, ...]

    def step_at(self, index: int) -> Optional[ConsultationStep]:
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None


@dataclass(frozen=True)
class RulePhase:
    """Mission and rules handed to the oracle for a matching phase."""
    mission: str
    rules: Tuple[str, ...]


@dataclass(frozen=True)
class CharterMeta:
    name: str
    tone: str
    version: str


@dataclass(frozen=True)
class Charter:
    meta: CharterMeta
    discovery: RulePhase
    variant: RulePhase
    phases: Mapping[str, ConsultationPhase] = field(default_factory=lambda: MappingProxyType({}))

    def phase(self, key: str) -> ConsultationPhase:
        return self.phases[key]


def _phases(*phases: ConsultationPhase) -> Mapping[str, ConsultationPhase]:
    return MappingProxyType({phase.key: phase for phase in phases})


# Validators return True on success or the corrective message.

def require_digits(answer: str) -> Union[bool, str]:
    """Dimensions must contain at least one number."""
    if not re.search(r"\d", answer):
        return "Please include dimensions with numbers (e.g., 20x15x10 cm)."
    return True


def require_positive_quantity(answer: str) -> Union[bool, str]:
    """Quantity must contain a number that floors to at least 1."""
    match = re.search(r"(\d+(?:\.\d+)?)", answer.replace(",", ""))
    if not match or int(float(match.group(1))) < 1:
        return "Please provide a valid quantity (e.g., 100, 500, 1000)."
    return True


def require_any_number(answer: str) -> Union[bool, str]:
    if not re.search(r"\d+(?:\.\d+)?", answer):
        return "Please provide a quantity (e.g., 100, 500, 1000)."
    return True


def require_service(answer: str) -> Union[bool, str]:
    """Launch kit orders need at least one billable service."""
    services = [part.strip() for part in answer.split(",") if part.strip()]
    if not [service for service in services if service != NONE_SERVICE_OPTION]:
        return "Please choose at least one launch service so we can prepare your quote."
    return True


DISCOVERY_RULES: Tuple[str, ...] = (
    "IGNORE prefixes like 'TEST' or 'rs-' in package titles.",
    "MATCH LOOSELY: 'Box' matches 'Custom Box Calculator'. 'Photo' matches 'خدمة تصوير'.",
    "If multiple matches exist, pick the most relevant one based on the user's specific keywords.",
    "Be culturally aware - support both English and Arabic product names.",
    "If the user is just greeting or chatting, respond warmly but guide them to search.",
    "Return ONLY a JSON object with 'type' and relevant fields. NO MARKDOWN.",
)

VARIANT_RULES = RulePhase(
    mission="Identify which specific package option (variant) the user wants.",
    rules=(
        "Analyze the user's input against the provided Options list.",
        "Match by keywords, synonyms, or partial matches.",
        "If unclear, ask for clarification by listing the available options.",
        "Return ONLY a JSON object. NO MARKDOWN.",
    ),
)

LAUNCH_SERVICES: Tuple[str, ...] = (
    "Hero shot photography",
    "Stop-motion unboxing video",
    "E-commerce product photos",
    "3D render with packaging for website",
    "Package design consultation",
    "Brand styling consultation",
)

SALES_CHARTER = Charter(
    meta=CharterMeta(
        name="Packageha Sales Associate",
        tone="Professional, thorough, and consultative. Always helpful, never pushy.",
        version="3.0",
    ),
    discovery=RulePhase(
        mission="Find the best match ID for the user's request from the provided inventory list.",
        rules=DISCOVERY_RULES,
    ),
    variant=VARIANT_RULES,
    phases=_phases(
        ConsultationPhase(
            key="product_details",
            mission=(
                "Collect information about the product that will go inside the package "
                "to help recommend the right packaging solution."
            ),
            steps=(
                ConsultationStep("product_description", "First, tell me about your product. What is it? What does it do?"),
                ConsultationStep(
                    "product_dimensions",
                    "What are your product dimensions? (Length x Width x Height in cm or inches)",
                    validator=require_digits,
                ),
                ConsultationStep("product_weight", "Approximately how much does your product weigh? (grams or ounces)"),
                ConsultationStep(
                    "fragility",
                    "Is your product fragile? Does it need special protection?",
                    options=("Not fragile", "Somewhat fragile", "Very fragile", "Needs cushioning/protection"),
                    multiple=False,
                ),
                ConsultationStep(
                    "budget",
                    "What's your budget range for packaging? (per unit or total)",
                    options=(
                        "Under 1 SAR/unit",
                        "1-5 SAR/unit",
                        "5-10 SAR/unit",
                        "10-20 SAR/unit",
                        "20+ SAR/unit",
                        "Budget flexible",
                        "Will discuss",
                    ),
                    multiple=False,
                ),
            ),
        ),
        ConsultationPhase(
            key="package_specs",
            mission="Collect package specifications (material, dimensions, print) after the package is selected.",
            steps=(
                ConsultationStep(
                    "material",
                    "Do you have a preference for Material?",
                    options=("Corrugated", "Folding Carton", "Rigid Box", "Paperboard", "Kraft", "White Cardboard"),
                    multiple=False,
                ),
                ConsultationStep(
                    "dimensions",
                    "What are the internal Dimensions for the package? (Length x Width x Height in cm or inches)",
                    validator=require_digits,
                ),
                ConsultationStep(
                    "print",
                    "Tell me about the Printing/Finish.",
                    # First group is single choice, second group can be combined.
                    options=(
                        ("Full color printing", "Logo only", "No printing"),
                        (
                            "Gold foil",
                            "Silver foil",
                            "Matte lamination",
                            "Glossy lamination",
                            "UV coating",
                            "Embossing",
                            "Debossing",
                        ),
                    ),
                    multiple=GROUPED,
                ),
            ),
        ),
        ConsultationPhase(
            key="fulfillment_specs",
            mission="Collect all information needed for order fulfillment and delivery.",
            steps=(
                ConsultationStep(
                    "quantity", "What quantity would you like to order?", validator=require_positive_quantity
                ),
                ConsultationStep(
                    "timeline",
                    "When is your deadline for delivery?",
                    options=("1-2 weeks", "2-4 weeks", "1-2 months", "2-3 months", "3+ months", "Flexible"),
                    multiple=False,
                ),
                ConsultationStep(
                    "shipping_address",
                    "Where should we deliver the order? (Please provide shipping address or city/region)",
                ),
                ConsultationStep(
                    "special_instructions",
                    "Any special fulfillment instructions or requirements? (optional - type 'none' to skip)",
                ),
            ),
        ),
        ConsultationPhase(
            key="launch_kit",
            mission="Offer and collect information for brand launch services.",
            steps=(
                ConsultationStep(
                    "service_selection",
                    "Would you like to add any brand launch services? (Select all that apply)",
                    options=LAUNCH_SERVICES + (NONE_SERVICE_OPTION,),
                    multiple=True,
                ),
                ConsultationStep(
                    "service_timeline",
                    "What's your timeline for these services?",
                    options=("ASAP", "1-2 weeks", "2-4 weeks", "1-2 months", "Flexible"),
                    multiple=False,
                ),
                ConsultationStep(
                    "service_notes",
                    "Any specific requirements or details for the launch services? (optional - type 'none' to skip)",
                ),
            ),
        ),
    ),
)

PACKAGE_ORDER_CHARTER = Charter(
    meta=CharterMeta(
        name="Packageha Package Ordering Assistant",
        tone="Professional, efficient, and helpful. Guide users to order packages quickly.",
        version="1.0",
    ),
    discovery=RulePhase(mission="Help user select a package from the available catalog.", rules=DISCOVERY_RULES),
    variant=RulePhase(mission="Help user select package variant.", rules=VARIANT_RULES.rules),
    phases=_phases(
        ConsultationPhase(
            key="consultation",
            mission="Collect package order details efficiently.",
            steps=(
                ConsultationStep(
                    "quantity", "What quantity would you like to order?", validator=require_positive_quantity
                ),
                ConsultationStep(
                    "notes", "Any special requirements or notes for this order? (optional - type 'none' to skip)"
                ),
            ),
        ),
    ),
)

LAUNCH_KIT_CHARTER = Charter(
    meta=CharterMeta(
        name="Packageha Launch Kit Assistant",
        tone="Professional and consultative. Help clients select studio services for their products.",
        version="1.0",
    ),
    discovery=RulePhase(
        mission="Present Launch Kit services to the user.",
        rules=(
            "Present services clearly and professionally.",
            "Explain what each service includes.",
            "Help user understand which services they need.",
        ),
    ),
    variant=VARIANT_RULES,
    phases=_phases(
        ConsultationPhase(
            key="consultation",
            mission="Collect project details for Launch Kit services.",
            steps=(
                ConsultationStep(
                    "service_selection",
                    "Which launch services would you like? (Select all that apply)",
                    options=LAUNCH_SERVICES,
                    multiple=True,
                    validator=require_service,
                ),
                ConsultationStep(
                    "product_info",
                    "Tell me about your product(s) - name, description, or what you're launching.",
                ),
                ConsultationStep(
                    "service_timeline",
                    "What's your target timeline for this project?",
                    options=("ASAP", "1-2 weeks", "2-4 weeks", "1-2 months", "Flexible"),
                    multiple=False,
                ),
                ConsultationStep("budget", "Do you have a budget range for this project?"),
                ConsultationStep("notes", "Any additional requirements or special requests?"),
            ),
        ),
    ),
)

PACKAGING_ASSISTANT_CHARTER = Charter(
    meta=CharterMeta(
        name="Packageha Packaging Consultant",
        tone="Consultative and expert. Help users understand their packaging needs and recommend the best solutions.",
        version="1.0",
    ),
    discovery=RulePhase(
        mission="Recommend the best matching package IDs from the inventory for the product described.",
        rules=DISCOVERY_RULES
        + (
            "Weigh the collected product details (dimensions, weight, fragility, budget) when ranking packages.",
            "Prefer 'multiple' with up to 5 ranked recommendations when more than one package fits.",
        ),
    ),
    variant=VARIANT_RULES,
    phases=_phases(
        ConsultationPhase(
            key="consultation",
            mission="Collect product information to recommend the best packaging solution.",
            steps=(
                ConsultationStep("product_description", "First, tell me about your product. What is it? What does it do?"),
                ConsultationStep(
                    "product_dimensions",
                    "What are the product dimensions? (Length x Width x Height in cm or inches)",
                    validator=require_digits,
                ),
                ConsultationStep("product_weight", "Approximately how much does it weigh? (grams or ounces)"),
                ConsultationStep("fragility", "Is the product fragile? Does it need special protection?"),
                ConsultationStep(
                    "brand_requirements", "Any specific branding or design requirements? (logo, colors, finish)"
                ),
                ConsultationStep("budget", "What's your budget range for packaging? (per unit or total)"),
                ConsultationStep(
                    "quantity", "What quantity are you planning to order?", validator=require_any_number
                ),
            ),
        ),
    ),
)


def build_charter_prompt(phase: str, charter: Charter = SALES_CHARTER) -> str:
    """Purpose: Render the oracle system prompt for a charter phase.
    Inputs/Outputs: Inputs are "discovery", "variant", or a consultation phase key and
        the charter; output is the system prompt string.
    Side Effects / State: None.
    Dependencies: Reads charter meta, rule phases and consultation missions.
    Failure Modes: Unknown phase keys render persona and JSON instruction only.
    If Removed: Matchers send the oracle no persona or rules.
    Testing Notes: Discovery prompt lists every rule as a "- " bullet.
    """
    # Persona first, then mission and rules for the requested phase.
    prompt = f"You are {charter.meta.name}. {charter.meta.tone}\n\n"
    if phase == "discovery":
        prompt += f"MISSION: {charter.discovery.mission}\n\n"
        prompt += "RULES:\n" + "\n".join(f"- {rule}" for rule in charter.discovery.rules) + "\n"
    elif phase == "variant":
        prompt += f"MISSION: {charter.variant.mission}\n\n"
        prompt += "RULES:\n" + "\n".join(f"- {rule}" for rule in charter.variant.rules) + "\n"
    elif phase in charter.phases:
        prompt += f"MISSION: {charter.phases[phase].mission}\n\n"
    prompt += "\nAlways follow these rules strictly. Return valid JSON only."
    return prompt
