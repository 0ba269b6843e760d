import re
from typing import Optional

DEFAULT_CATEGORY = "general"

# Ordered: on equal hit counts the earlier category wins
CATEGORY_KEYWORDS: dict[str, list[str]] = {
    "health_wellness": [
        "health", "medical", "doctor", "physician", "symptom", "pain", "illness", "sick",
        "disease", "medication", "medicine", "treatment", "diagnosis", "diagnosed", "allergy",
        "allergic", "allergies", "epipen", "asthma", "diabetes", "insulin", "hospital", "clinic",
        "fitness", "exercise", "workout", "gym", "sleep", "injury", "surgery", "pregnant",
    ],
    "mental_emotional": [
        "stress", "stressed", "anxious", "anxiety", "worried", "feel", "feeling", "emotional",
        "mood", "mental", "therapy", "therapist", "counseling", "overwhelmed", "depressed",
        "depression", "panic", "confidence", "lonely",
    ],
    "relationships_social": [
        "family", "spouse", "husband", "wife", "partner", "married", "marriage", "boyfriend",
        "girlfriend", "children", "child", "kids", "son", "daughter", "parents", "mother",
        "father", "mom", "dad", "brother", "sister", "friend", "friends", "wedding", "divorce",
        "dating", "pet", "pets", "dog", "cat",
    ],
    "work_career": [
        "work", "working", "job", "career", "profession", "business", "company", "office",
        "colleague", "coworker", "boss", "manager", "team", "promotion", "client",
        "interview", "employer", "hired", "startup", "founded",
    ],
    "money_income_debt": [
        "income", "salary", "wage", "paycheck", "earnings", "debt", "loan", "loans", "credit",
        "mortgage", "payment", "bill", "bills", "owe", "bankruptcy", "rent",
    ],
    "money_spending_goals": [
        "budget", "budgeting", "spending", "spend", "purchase", "savings", "save", "saving",
        "investment", "investing", "stocks", "portfolio", "retirement", "wealth",
    ],
    "goals_active_current": [
        "goal", "goals", "objective", "target", "working on", "trying to", "task", "deadline",
        "this week", "this month", "priority", "focus",
    ],
    "goals_future_dreams": [
        "dream", "dreams", "someday", "future", "long-term", "vision", "aspiration",
        "bucket list", "one day", "hope to",
    ],
    "tools_tech_workflow": [
        "software", "app", "laptop", "computer", "python", "code", "coding", "tool", "tools",
        "workflow", "automation", "spreadsheet", "email", "calendar", "phone",
    ],
    "daily_routines_habits": [
        "routine", "habit", "habits", "morning", "evening", "every day", "daily", "commute",
        "schedule", "usually", "wake up", "bedtime",
    ],
    "personal_life_interests": [
        "hobby", "hobbies", "love", "enjoy", "favorite", "favourite", "music", "book", "books",
        "movie", "movies", "travel", "vacation", "hiking", "cooking", "food", "restaurant",
        "recipe", "sushi", "pizza", "coffee", "game", "games", "sport", "sports",
    ],
}

_PATTERNS = {
    category: [re.compile(r"\b" + re.escape(k) + r"\b", re.IGNORECASE) for k in keywords]
    for category, keywords in CATEGORY_KEYWORDS.items()
}

KNOWN_CATEGORIES = list(CATEGORY_KEYWORDS) + [DEFAULT_CATEGORY]


def categorize(text: str, hint: Optional[str] = None) -> str:
    """Pick a category by keyword hits; a known caller hint always wins."""
    if hint:
        return hint
    best, best_hits = DEFAULT_CATEGORY, 0
    for category, patterns in _PATTERNS.items():
        hits = sum(1 for p in patterns if p.search(text))
        if hits > best_hits:
            best, best_hits = category, hits
    return best
