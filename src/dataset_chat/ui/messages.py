"""
UI Messages - Centralized message constants.

Simple module-level constants for consistent user-visible messaging.
Keep it lightweight - no classes or complex structures.
"""

# Submission preconditions
EMPTY_QUERY = "Please type a question first"
NO_DATASET_ATTACHED = "Please upload a dataset first"
QUERY_ALREADY_RUNNING = "Please wait for the current answer to finish"

# Query stream failures
QUERY_FAILED_DEFAULT = "Failed to execute query"
STREAM_ERROR = "Stream error"
NO_RESPONSE_BODY = "No response body"
STREAM_CONNECTION_FAILED = "Could not reach the analysis service"
STREAM_TIMED_OUT = "The analysis service stopped responding"
STREAM_ENDED_WITHOUT_RESULT = "The response ended before the analysis finished"
QUERY_CANCELLED = "Query cancelled"

# Progress labels
PROGRESS_ANALYZING = "Analyzing..."
PROGRESS_GENERATING_CODE = "Generating code..."
PROGRESS_EXECUTING_CODE = "Executing code..."
VIEW_GENERATED_CODE = "View generated code"

# Session loading
SESSION_ACCESS_DENIED = "You don't have access to this session"
SESSION_NOT_FOUND = "Session not found"
SESSION_LOAD_FAILED = "Failed to load chat"
DATASETS_LOAD_FAILED = "Failed to load datasets"

# Transcript placeholders
NO_DATASETS_HINT = "No dataset uploaded. Upload a CSV or Excel file to start analyzing."
ASK_A_QUESTION_HINT = "Ask a question about your data"
