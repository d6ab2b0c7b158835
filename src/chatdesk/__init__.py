"""Chatdesk — chat front end and backend for hosted generative-AI models."""
__version__ = "1.0.0"
