"""Allow running the processor service as a module: python -m event_processor."""

from event_processor.runner import main

if __name__ == "__main__":
    main()
