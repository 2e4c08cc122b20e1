"""SkillPort contest leaderboard service."""
