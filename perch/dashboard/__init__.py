"""perch Textual dashboard.

Launch with: python -m perch.dashboard
"""
