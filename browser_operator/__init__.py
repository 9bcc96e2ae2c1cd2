"""
Browser Operator - goal-driven browser automation.

Controls Chromium via Playwright and works toward natural-language goals
step-by-step with LLM-powered decisions, safety gating and per-step logs.
"""

__version__ = "0.1.0"
__author__ = "Browser Operator Contributors"
