"""
Anonymous-session lifecycle and conversation cache layer of a chat app.
"""
