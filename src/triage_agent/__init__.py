"""
Inbox triage agent.

Watches mailboxes for new messages, classifies each one with a language model,
applies labels/archiving back to the provider, and maintains a layered memory of
past decisions (daily, weekly, monthly, yearly) that is fed back into future
decisions. Morning and evening wrapup digests are produced alongside.
"""

__version__ = '1.0.0'
