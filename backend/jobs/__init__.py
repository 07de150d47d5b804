"""
Background jobs for the news impact learning engine.

Jobs:
- evaluate_predictions: Score due predictions and fold them into rules and patterns
- retrospective_scan: Analyze material price moves for missed predictions
- daily_report: Refresh time-based patterns and compile yesterday's report
"""
