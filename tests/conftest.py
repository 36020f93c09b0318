import os
import tempfile

# The app module builds its session store at import time; keep it out of the package tree.
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="packageha-test-"))
