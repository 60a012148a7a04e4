def load_env_file() -> None:
    """Load environment variables from a local .env file if not already set.

    WHAT:
        Loads variables from backend/.env into os.environ.
        Existing environment variables are never overwritten.
    WHY:
        Developers keep Stripe/Boxtal/Clerk test keys in a local .env
        while production injects the real values.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
