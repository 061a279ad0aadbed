"""Hardcoded inspection policy: deny-lists, scene categories, prompts and canned messages."""
from typing import Dict, List, Tuple


# Scoring policy
PASS_THRESHOLD = 6
FORENSIC_PENALTY = 3
MIN_SCORE = 0
MAX_SCORE = 10

# Fragments of the "Software" tag written by photo editing / beautification apps
EDITING_SOFTWARE_DENYLIST: Tuple[str, ...] = (
    "photoshop",
    "gimp",
    "lightroom",
    "snapseed",
    "vsco",
    "afterlight",
    "picsart",
    "facetune",
    "meitu",
    "beautyplus",
    "faceapp",
    "snow",
    "b612",
    "foodie",
    "ulike",
)

# Scene categories understood by the content check. Only ROOM is admissible.
ROOM_SCENE = "ROOM"
SCENE_CATEGORIES: Tuple[str, ...] = (
    ROOM_SCENE,
    "BATHROOM",
    "HALLWAY",
    "OUTDOOR",
    "SELFIE",
    "SCREEN",
    "OTHER",
)

# Keyword fallback when the classifier answers in free text
EXCLUDED_SCENE_KEYWORDS: Dict[str, List[str]] = {
    "BATHROOM": ["bathroom", "toilet", "shower", "restroom", "화장실", "욕실"],
    "HALLWAY": ["hallway", "corridor", "복도"],
    "OUTDOOR": ["outside", "outdoor", "street", "야외", "외부"],
    "SELFIE": ["selfie", "셀카"],
    "SCREEN": ["screenshot", "monitor screen", "screen capture", "스크린샷"],
}

SCENE_LABELS: Dict[str, str] = {
    "BATHROOM": "bathroom",
    "HALLWAY": "hallway or corridor",
    "OUTDOOR": "outdoor scene",
    "SELFIE": "selfie without the room",
    "SCREEN": "photo of a screen",
    "OTHER": "not a dormitory room",
}

# Model marks photos it refuses to grade with this prefix
NOT_INSPECTABLE_MARKER = "NOT_INSPECTABLE:"
SCORE_MARKERS: Tuple[str, ...] = ("score", "점수")

DEFAULT_FEEDBACK = "Analysis complete."
PARTIAL_FEEDBACK_NOTE = "(analysis incomplete: response was truncated)"
FALLBACK_FEEDBACK_NOTE = "(provisional score: automatic analysis was unavailable)"

FALLBACK_MESSAGES: Tuple[str, ...] = (
    "Your room looks generally tidy. Keep the desk and floor clear of clutter.",
    "Room condition looks acceptable. Remember to make the bed and put away laundry.",
    "Thanks for submitting. Keep shared surfaces clean and ventilate the room regularly.",
    "The room appears to be in reasonable order. Check under the bed and desk for dust.",
    "Submission received. Please keep personal items organized on the shelves.",
)

SCORING_PROMPT = """You are inspecting a photo of a dormitory room for cleanliness and order.

Evaluate:
1. Floor: free of trash, clothes and clutter
2. Bed: made, bedding tidy
3. Desk and shelves: organized, no food waste
4. Overall hygiene and ventilation

If the photo does not show the inside of a dormitory room (for example a bathroom,
hallway, outdoor scene, selfie or a screen), answer with a single line:
NOT_INSPECTABLE: <what the photo shows>

Otherwise answer in exactly this format:
SCORE: <integer 0-10>
<two or three sentences of concrete feedback for the resident>
"""

TEMPLATE_SCORING_PROMPT = """Compare two photos of dormitory rooms.

The first image is the reference photo of a well-kept room, registered by the dormitory office.
The second image is the resident's inspection photo.

Score the second image out of 10 against the reference:
- Order compared with the reference (3 points)
- Cleanliness compared with the reference (3 points)
- Safety: no hazards (2 points)
- Overall similarity to the reference condition (2 points)

If the second image does not show the inside of a dormitory room, answer with a single line:
NOT_INSPECTABLE: <what the photo shows>

Otherwise answer in exactly this format:
SCORE: <integer 0-10>
<two or three sentences comparing the room with the reference>
"""

REJECTION_NOTE_PREFIX = "Rejected by administrator"

SCENE_PROMPT = f"""Classify what this photo shows.
Answer with a single line in the form:
SCENE: <one of {", ".join(SCENE_CATEGORIES)}>

Use ROOM only for the interior of a bedroom or dormitory room.
"""

# Gate messages
NO_SCHEDULE_REASON = "no schedule configured"
DUPLICATE_REASON = "Already submitted today."


def scene_label(category: str) -> str:
    """Human readable name for an excluded scene category."""
    return SCENE_LABELS.get(category.upper(), category.lower())
