# Brainstorm package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("BRAINSTORM_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    # Module loggers hang off the import name; completion traffic off "brainstorm.llm".
    for name in dict.fromkeys((__name__, "brainstorm")):
        logger = logging.getLogger(name)
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("[BRAINSTORM][%(levelname)s] %(message)s"))
            logger.addHandler(handler)
        logger.setLevel(level)

    llm_level_name = (os.getenv("BRAINSTORM_LLM_LOG_LEVEL") or level_name).upper()
    llm_level = getattr(logging, llm_level_name, level)
    logging.getLogger("brainstorm.llm").setLevel(llm_level)


_configure_logging()
