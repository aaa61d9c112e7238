"""OverSkill build, self-heal and deploy pipeline"""

__version__ = "1.0.0"
