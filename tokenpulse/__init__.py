"""
tokenpulse - LLM Token Usage Monitor

Polls the OpenAI organization usage API, aggregates calendar totals, estimates
the real-time consumption rate between polls and tracks day/week/month trends.
"""

__version__ = "1.0.0"
__author__ = "tokenpulse"
