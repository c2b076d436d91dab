"""Sitebot: onboarding workflow and answer-trust pipeline for website chatbots."""

__version__ = "0.1.0"
