"""claudebridge: run the Claude agent bridge script as a supervised child process.

Streams replies from a Node.js bridge script, arbitrates the permission,
question and plan-approval requests it raises, and routes messages from a
presentation layer to the right handler.
"""

__version__ = "0.1.0"
