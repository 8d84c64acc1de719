import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# --- Azure DevOps Configuration ---
# Organization URL, e.g. https://dev.azure.com/my-org
AZURE_ORGANIZATION_URL = os.getenv("AZURE_ORGANIZATION_URL", "https://dev.azure.com/rhino-org").rstrip("/")

# The team project test cases and shared steps live in
AZURE_PROJECT = os.getenv("AZURE_PROJECT", "RhinoTests")

AZURE_API_VERSION = os.getenv("AZURE_API_VERSION", "7.0")

# --- Execution Configuration ---
# Upper bound for concurrent shared-step fetches per test case
MAX_WORKERS = int(os.getenv("STEPSYNC_MAX_WORKERS", "4"))

# Number of test cases pulled concurrently
BATCH_SIZE = int(os.getenv("STEPSYNC_BATCH_SIZE", "10"))

REQUEST_TIMEOUT = int(os.getenv("STEPSYNC_REQUEST_TIMEOUT", "30"))
MAX_RETRIES = int(os.getenv("STEPSYNC_MAX_RETRIES", "3"))

# Seconds allowed for a whole test case pull (fetch + expand)
PULL_TIMEOUT = float(os.getenv("STEPSYNC_PULL_TIMEOUT", "120"))

# --- Work Item Fields ---
STEPS_FIELD = "Microsoft.VSTS.TCM.Steps"
DATA_SOURCE_FIELD = "Microsoft.VSTS.TCM.LocalDataSource"
TITLE_FIELD = "System.Title"
PRIORITY_FIELD = "Microsoft.VSTS.Common.Priority"

# Map work item fields to the keys of the pulled test case
FIELD_MAPPING = {
    TITLE_FIELD: "title",
    PRIORITY_FIELD: "priority",
    STEPS_FIELD: "steps",  # Custom key for transformation
    DATA_SOURCE_FIELD: "data_source"  # Custom key for transformation
}

DEFAULT_PRIORITY = "2"

# --- Step Markup ---
LEAF_TAG = "step"
STEP_TEXT_TAG = "parameterizedstring"
# Words that open a new expected result inside a single expected-result cell
ASSERTION_MARKERS = ("verify", "assert")

ITERATION_COMMENT = "Automatically Created by Rhino Engine."
