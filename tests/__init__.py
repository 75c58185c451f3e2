"""
Test Package Initialization

This package contains all unit and integration tests for the
VoicePilot assistant.

Test Structure:
- test_config.py: Configuration tests
- test_vad.py / test_capture.py: Voice activity detection and capture
- test_response_parser.py / test_prompts.py: Tool-call parsing and prompts
- test_llm.py: Non-realtime backend client and cost accounting
- test_events.py / test_correlation.py: Event bus and response correlation
- test_transport.py / test_reconciler.py / test_demux.py: Realtime pieces
- test_session.py: Realtime session against a scripted backend
- test_processor.py / test_cli.py: Directive processing and the CLI

Run tests with:
    pytest tests/ -v
"""
