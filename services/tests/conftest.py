import os
import tempfile

# the sandbox repos bind their engine at import time
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.mkdtemp()}/sandbox.db")
