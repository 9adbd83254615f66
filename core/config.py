"""Configuration constants for the TOEIC words application."""

# Forgetting-curve schedule: consecutive correct answers -> days before next review
REVIEW_SCHEDULE = {
    0: 0,
    1: 1,
    2: 2,
    3: 4,
    4: 7,
    5: 15,
}
MAX_SCHEDULED_COUNT = 5       # correct_count is capped here before the lookup

# Importance ranks (stored as stars by the generator)
MIN_IMPORTANCE = 1
MAX_IMPORTANCE = 5
DEFAULT_IMPORTANCE = 3

# Predicted score model
MIN_SCORE = 0
MAX_SCORE = 990
DEFAULT_PREDICTED_SCORE = 450
SCORE_SWING = 200             # Points moved per unit of (accuracy - 0.5)
WEAK_CATEGORY_LIMIT = 2

# Quiz generation
OPTION_COUNT = 4
OPTION_LETTERS = 'ABCD'
DEFAULT_QUIZ_COUNT = 10
MAX_QUIZ_COUNT = 50
GENERATION_MAX_ATTEMPTS = 3
GENERATION_RETRY_DELAY = 1.0  # seconds between attempts on malformed output

# Free tier
FREE_DAILY_GENERATIONS = 1
FREE_WORD_LIMIT = 200

# Daily review targets
DAILY_TARGET_FLOOR = 20       # Second target is never below this
DAILY_AVERAGE_WINDOW = 30     # Days averaged for the target

# Question bank: total correct answers -> days before a question is due again
QUESTION_REVIEW_INTERVALS = {
    0: 0,
    1: 1,
    2: 3,
    3: 7,
    4: 14,
    5: 30,
    6: 60,
}
MAX_QUESTION_INTERVAL_COUNT = 6
NEVER_ANSWERED_DAYS = 999
DUE_PRIORITY_BONUS = 5
STALENESS_BONUS_CAP = 3       # Priority gained per week since the last answer, capped
SELECTION_POOL_FACTOR = 2     # Shuffle among the top count * factor candidates
WEAKNESS_MIN_ATTEMPTS = 2
WEAKNESS_MAX_CORRECT_RATE = 0.7
CATEGORY_MIN_ATTEMPTS = 3
CATEGORY_ANALYSIS_LIMIT = 5
LEVEL_SCORE_THRESHOLDS = (400, 600, 800)  # Score bounds for levels 1-4
