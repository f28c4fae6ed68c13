"""Reelcraft: batch rendering of short vertical videos."""
