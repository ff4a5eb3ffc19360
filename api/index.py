"""
Vercel serverless entry point. Re-exports the StockJudge FastAPI app.
"""
import sys, os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from stockjudge.main import app  # noqa: E402,F401
