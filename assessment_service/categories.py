from dataclasses import dataclass

ADVANCED_THRESHOLD = 70
INTERMEDIATE_THRESHOLD = 40


@dataclass(frozen=True)
class CategoryInfo:
    key: str
    label_en: str
    description_en: str


CATEGORIES = {
    "advanced": CategoryInfo(
        key="advanced",
        label_en="Advanced",
        description_en="Excellent performance, can specialize further",
    ),
    "intermediate": CategoryInfo(
        key="intermediate",
        label_en="Intermediate",
        description_en="Good foundation, can develop further",
    ),
    "beginner": CategoryInfo(
        key="beginner",
        label_en="Beginner",
        description_en="Needs strong foundation in this area",
    ),
}


def category_for(percentage: float) -> str:
    """
    Proficiency category for a 0..100 percentage.
    Every label shown for a score must come from here.
    """
    if percentage >= ADVANCED_THRESHOLD:
        return "advanced"
    if percentage >= INTERMEDIATE_THRESHOLD:
        return "intermediate"
    return "beginner"


def category_info(percentage: float) -> CategoryInfo:
    return CATEGORIES[category_for(percentage)]
