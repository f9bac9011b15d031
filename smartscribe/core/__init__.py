"""
Core services of the SmartScribe server.

This module contains:
- recording_manager: recording upload, listing and transcription lifecycle
- transcription_client / speaker_labeling: speech-to-text and completion providers
- notifications / realtime: notification fan-out over durable and live channels
- security / token_store / otp_store: authentication, sessions and rate limits
- activity / scheduler: audit log, analytics and the periodic maintenance task
"""
