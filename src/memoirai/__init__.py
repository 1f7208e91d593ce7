"""Memoir AI - a writing companion for personal stories.

Stories are analyzed locally for the people, places, events, times and
objects they mention, and for the context they leave out. A conversational
assistant then helps the writer fill those gaps, grounded strictly in what
was written.
"""

__version__ = "1.0.0"
