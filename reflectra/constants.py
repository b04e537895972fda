"""Shared constants for Reflectra: seed categories, rules, prompts."""

WELLNESS_TYPES = {"productive", "growth", "rest", "social", "drain", "unknown"}

FALLBACK_CATEGORY = "Uncategorized"

# (name, description, color, wellness_type); these must always exist
SEED_CATEGORIES = [
    ("Focused Work", "Deep work, coding, writing, professional tasks", "#4CAF50", "productive"),
    ("Learning", "Educational content, tutorials, courses, documentation", "#2196F3", "growth"),
    ("Research", "Information gathering, reading articles, exploration", "#9C27B0", "growth"),
    ("Social Connection", "Social media, messaging, community engagement", "#FF9800", "social"),
    ("Relaxation", "Entertainment, videos, music, leisure browsing", "#00BCD4", "rest"),
    ("Mindless Scroll", "Unfocused browsing, excessive social media", "#F44336", "drain"),
    ("Communication", "Email, chat, professional communication", "#607D8B", "productive"),
    (FALLBACK_CATEGORY, "Not yet categorized", "#9E9E9E", "unknown"),
]

SEED_CATEGORY_NAMES = [c[0] for c in SEED_CATEGORIES]

# Tier-1 rules. Order matters twice: categories are tried top to bottom,
# and inside a category the more specific patterns come first.
DEFAULT_RULES = {
    "Mindless Scroll": [
        r"^https?://([a-z0-9-]+\.)*tiktok\.com(/|$)",
        r"^https?://(www\.)?instagram\.com/reels?(/|$)",
        r"^https?://(www\.|m\.)?youtube\.com/shorts(/|$)",
        r"^https?://(www\.)?facebook\.com/(reel|watch)(/|$)",
        r"^https?://([a-z0-9-]+\.)*9gag\.com(/|$)",
        r"^https?://(www\.|old\.)?reddit\.com/r/(all|popular)(/|$)",
    ],
    "Focused Work": [
        r"^https?://([a-z0-9-]+\.)*github\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*gitlab\.com(/|$)",
        r"^https?://docs\.google\.com(/|$)",
        r"^https?://sheets\.google\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*notion\.(so|site)(/|$)",
        r"^https?://([a-z0-9-]+\.)*figma\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*linear\.app(/|$)",
        r"^https?://[a-z0-9-]+\.atlassian\.net(/|$)",
        r"^https?://(localhost|127\.0\.0\.1)(:\d+)?(/|$)",
    ],
    "Learning": [
        r"^https?://([a-z0-9-]+\.)*coursera\.org(/|$)",
        r"^https?://([a-z0-9-]+\.)*udemy\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*khanacademy\.org(/|$)",
        r"^https?://([a-z0-9-]+\.)*edx\.org(/|$)",
        r"^https?://([a-z0-9-]+\.)*stackoverflow\.com(/|$)",
        r"^https?://developer\.mozilla\.org(/|$)",
        r"^https?://docs\.python\.org(/|$)",
        r"^https?://(www\.)?w3schools\.com(/|$)",
    ],
    "Communication": [
        r"^https?://mail\.google\.com(/|$)",
        r"^https?://outlook\.(live|office|office365)\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*slack\.com(/|$)",
        r"^https?://teams\.microsoft\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*zoom\.us(/|$)",
    ],
    "Social Connection": [
        r"^https?://([a-z0-9-]+\.)*facebook\.com(/|$)",
        r"^https?://(www\.)?instagram\.com(/|$)",
        r"^https?://(www\.|mobile\.)?(twitter|x)\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*linkedin\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*reddit\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*discord\.com(/|$)",
        r"^https?://web\.whatsapp\.com(/|$)",
    ],
    "Relaxation": [
        r"^https?://([a-z0-9-]+\.)*youtube\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*netflix\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*twitch\.tv(/|$)",
        r"^https?://open\.spotify\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*hulu\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*disneyplus\.com(/|$)",
    ],
    "Research": [
        r"^https?://([a-z]{2,3}\.)?(m\.)?wikipedia\.org(/|$)",
        r"^https?://([a-z0-9-]+\.)*arxiv\.org(/|$)",
        r"^https?://scholar\.google\.com(/|$)",
        r"^https?://([a-z0-9-]+\.)*(nytimes|bbc|theguardian|reuters)\.(com|co\.uk)(/|$)",
    ],
}

CATEGORY_SYSTEM_PROMPT = """You are an AI assistant that categorizes web browsing activity for digital wellness insights.

Given a URL and page title, classify the browsing session into ONE of these categories:

1. **Focused Work** - Deep work, coding, writing, professional productivity tools
2. **Learning** - Educational content, tutorials, courses, documentation, skill development
3. **Research** - Information gathering, reading articles, news, exploration
4. **Social Connection** - Social media, messaging platforms, community engagement
5. **Relaxation** - Entertainment, videos, music, games, leisure browsing
6. **Mindless Scroll** - Unfocused browsing, excessive social media, clickbait
7. **Communication** - Email, chat, professional communication tools
8. **Uncategorized** - Unable to determine or neutral activity

Respond with ONLY the category name, nothing else."""

# Capture agent drops anything shorter than this
MIN_SESSION_MS = 3000

REFLECTION_SYSTEM_PROMPT = """You are a thoughtful digital wellness coach helping users reflect on their browsing behavior.

Your role is to:
1. Analyze browsing session data to answer user questions
2. Provide insights without judgment - focus on awareness, not productivity pressure
3. Help users understand patterns in their digital behavior
4. Encourage healthy reflection and self-awareness
5. Highlight interesting findings or patterns

Keep responses conversational, insightful, and focused on well-being rather than productivity metrics."""

WEEKLY_SUMMARY_PROMPT = """Create a thoughtful weekly summary of this browsing activity. Focus on:
1. Overall patterns and trends
2. Digital wellness insights
3. Suggestions for balance (if applicable)
4. Positive observations

Keep it encouraging and insightful."""
