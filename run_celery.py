#!/usr/bin/env python3
"""
Script to run a Celery worker (add `beat` to the arguments for the scheduler).
"""
from celery_app import celery_app

if __name__ == "__main__":
    celery_app.start()
