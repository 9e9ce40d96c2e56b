import os
from typing import Any, Dict, List, Optional, Tuple
from jinja2 import Environment, FileSystemLoader, Template
from callcoach.schemas.analysis import ScenarioContext

# Fixed category set the model is asked for. Reports still treat categories as
# an open mapping, so custom templates may ask for others.
DEFAULT_CATEGORIES: List[Dict[str, Any]] = [
    {
        "key": "empathyRapport",
        "label": "Empathy & Rapport",
        "weight": 15,
        "feedback_hint": "Specific feedback on building trust with customer",
        "questions": [
            "Did the CSR acknowledge the customer's concerns with understanding?",
            "Did they make the customer feel heard and not judged?",
            "Did they build trust and connection appropriate to a home service call?",
        ],
    },
    {
        "key": "bookingConversion",
        "label": "Booking & Conversion",
        "weight": 25,
        "feedback_hint": "Did they ask for the appointment? How well did they handle booking?",
        "questions": [
            "Did the CSR attempt to book an appointment? (Most important metric)",
            "Did they offer specific date/time options rather than leaving it open?",
            "Did they create appropriate urgency for the situation?",
            "For existing customers: did they retain or save the account?",
        ],
    },
    {
        "key": "serviceKnowledge",
        "label": "Service & Technical Knowledge",
        "weight": 20,
        "feedback_hint": "Feedback on technical accuracy and service explanation",
        "questions": [
            "Did the CSR accurately explain treatment methods and what to expect?",
            "Did they explain safety information (pets, children, prep requirements)?",
            "Did they accurately describe service packages, pricing and guarantees?",
        ],
    },
    {
        "key": "valueAndObjections",
        "label": "Value Communication & Objection Handling",
        "weight": 25,
        "feedback_hint": "How well did they communicate value and handle price/competitor objections?",
        "questions": [
            "Did the CSR communicate value rather than just price?",
            "Did they handle price objections effectively without discounting?",
            "Did they present recurring service benefits vs one-time treatment?",
        ],
    },
    {
        "key": "professionalism",
        "label": "Professionalism & Call Control",
        "weight": 15,
        "feedback_hint": "Call control, tone, and professional conduct",
        "questions": [
            "Did the CSR maintain a professional, confident tone?",
            "Did they control the call flow and ask the right qualifying questions?",
            "Did they summarize and confirm next steps clearly?",
        ],
    },
]

DEFAULT_CATEGORY_KEYS = [c["key"] for c in DEFAULT_CATEGORIES]


class CoachingPromptBuilder:
    def __init__(self, categories: Optional[List[Dict[str, Any]]] = None):
        template_dir = os.path.join(os.path.dirname(__file__), 'templates')
        self.env = Environment(loader=FileSystemLoader(template_dir), keep_trailing_newline=True)
        self.categories = categories or DEFAULT_CATEGORIES

    def _template(self, custom: Optional[str], default_name: str) -> Template:
        if custom:
            return self.env.from_string(custom)
        return self.env.get_template(default_name)

    def build_context(self, transcript: str, scenario: ScenarioContext, duration_seconds: Optional[float]) -> Dict[str, Any]:
        product_context = None
        if scenario.product_context is not None and scenario.product_context.has_products():
            product_context = scenario.product_context.model_dump()

        scoring_criteria = None
        if scenario.scoring_criteria is not None and not scenario.scoring_criteria.is_empty():
            scoring_criteria = scenario.scoring_criteria.model_dump()

        return {
            "company": {"name": scenario.company_name or "the company"},
            "scenario": {
                "name": scenario.name or "Customer Service Call",
                "difficulty": (scenario.difficulty or "medium").capitalize(),
            },
            "call_duration": round(duration_seconds) if duration_seconds else "Unknown",
            "transcript": transcript,
            "product_context": product_context,
            "scoring_criteria": scoring_criteria,
            "categories": self.categories,
        }

    def build(self, transcript: str, scenario: ScenarioContext, duration_seconds: Optional[float] = None) -> Tuple[str, str]:
        """Render (system, user) prompts for one coaching request."""
        context = self.build_context(transcript, scenario, duration_seconds)
        system = self._template(scenario.custom_system_prompt, "coaching_system.j2").render(**context)
        user = self._template(scenario.custom_user_prompt, "coaching_user.j2").render(**context)
        return system.strip(), user.strip()

prompt_builder = CoachingPromptBuilder()
