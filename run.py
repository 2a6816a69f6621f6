"""Local development entry point.

Usage:
    python run.py
    SCHEDULER_IN_PROCESS=1 python run.py   # also run the sweeps in this process

Production runs the web app under a WSGI server and the sweeps as a
separate `flask run-scheduler` process.
"""

import os

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from leadmarket import create_app

app = create_app()

if __name__ == "__main__":
    # The debug reloader imports this module twice; only the child serves.
    if os.environ.get("SCHEDULER_IN_PROCESS") == "1" and os.environ.get("WERKZEUG_RUN_MAIN"):
        from leadmarket.services.scheduler_service import SweepScheduler

        SweepScheduler(app).start()

    app.run(debug=True, host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
