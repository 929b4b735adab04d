"""Core runtime plumbing shared by every engine component."""
