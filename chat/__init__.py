"""chat/ -- Intent model the Telegram front end dispatches through.

Layer rule: chat/ imports from auth/ and core/. Nothing imports from chat/.
"""
