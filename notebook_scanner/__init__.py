"""
Notebook scanner core package.

The scanning subsystem mints page tokens, tracks scan jobs for photographed
notebook pages through recognition, extracts marker-tagged content from the
recognized text, and routes it into task lists, draft calendar events and
page transcripts.
"""
