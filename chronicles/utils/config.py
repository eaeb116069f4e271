import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Database connection string. SQLite through aiosqlite is the default for
# local development; a ``postgresql+asyncpg://`` URL switches to PostgreSQL.
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///chronicles.db")

# Echo every SQL statement to the log. Useful when debugging persistence.
DATABASE_ECHO = os.environ.get("DATABASE_ECHO", "0").lower() in ("1", "true", "yes")

# Telegram bot token used to relay session messages to participants. The
# relay is disabled when the variable is empty.
BOT_TOKEN = os.environ.get("BOT_TOKEN", "")

# XP granted on top of the accrued session XP when a story is completed.
COMPLETION_XP_BONUS = int(os.environ.get("COMPLETION_XP_BONUS", "100"))

# Closed range every character stat is clamped to.
STAT_MIN = int(os.environ.get("STAT_MIN", "1"))
STAT_MAX = int(os.environ.get("STAT_MAX", "10"))

# Seats available in group and async sessions. Solo sessions always have one.
GROUP_MAX_PLAYERS = int(os.environ.get("GROUP_MAX_PLAYERS", "4"))

# Length of the shareable join code issued for non-solo sessions.
SESSION_CODE_LENGTH = int(os.environ.get("SESSION_CODE_LENGTH", "6"))

# Number of log messages returned when a client loads a session.
MESSAGE_HISTORY_LIMIT = int(os.environ.get("MESSAGE_HISTORY_LIMIT", "100"))

# Attributes every character carries, with the value used when a character
# record does not define one.
DEFAULT_STATS = {
    "strength": 3,
    "magic": 3,
    "charisma": 3,
    "wisdom": 3,
    "agility": 3,
}


class Config:
    DATABASE_URL = DATABASE_URL
    DATABASE_ECHO = DATABASE_ECHO
    BOT_TOKEN = BOT_TOKEN
    COMPLETION_XP_BONUS = COMPLETION_XP_BONUS
    STAT_MIN = STAT_MIN
    STAT_MAX = STAT_MAX
    GROUP_MAX_PLAYERS = GROUP_MAX_PLAYERS
    SESSION_CODE_LENGTH = SESSION_CODE_LENGTH
    MESSAGE_HISTORY_LIMIT = MESSAGE_HISTORY_LIMIT
