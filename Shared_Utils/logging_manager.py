import logging
import os
from logging.handlers import TimedRotatingFileHandler


class CustomLogger(logging.Logger):
    # Define custom logging levels
    ALLOCATION_LEVEL_NUM = 21
    UNDO_LEVEL_NUM = 22
    PAYMENT_LEVEL_NUM = 23
    RECONCILE_LEVEL_NUM = 19
    INSUFFICIENT_QUANTITY_NUM = 25

    logging.addLevelName(ALLOCATION_LEVEL_NUM, "ALLOCATION")
    logging.addLevelName(UNDO_LEVEL_NUM, "UNDO")
    logging.addLevelName(PAYMENT_LEVEL_NUM, "PAYMENT")
    logging.addLevelName(RECONCILE_LEVEL_NUM, "RECONCILE")
    logging.addLevelName(INSUFFICIENT_QUANTITY_NUM, "INSUFFICIENT_QUANTITY")

    def allocation(self, message, *args, **kwargs):
        if self.isEnabledFor(self.ALLOCATION_LEVEL_NUM):
            self._log(self.ALLOCATION_LEVEL_NUM, f"ALLOCATION: {message}", args, **kwargs)

    def undo(self, message, *args, **kwargs):
        if self.isEnabledFor(self.UNDO_LEVEL_NUM):
            self._log(self.UNDO_LEVEL_NUM, f"UNDO: {message}", args, **kwargs)

    def payment(self, message, *args, **kwargs):
        if self.isEnabledFor(self.PAYMENT_LEVEL_NUM):
            self._log(self.PAYMENT_LEVEL_NUM, f"PAYMENT: {message}", args, **kwargs)

    def reconcile(self, message, *args, **kwargs):
        if self.isEnabledFor(self.RECONCILE_LEVEL_NUM):
            self._log(self.RECONCILE_LEVEL_NUM, f"RECONCILE: {message}", args, **kwargs)

    def insufficient_quantity(self, message, *args, **kwargs):
        if self.isEnabledFor(self.INSUFFICIENT_QUANTITY_NUM):
            self._log(self.INSUFFICIENT_QUANTITY_NUM, f"INSUFFICIENT_QUANTITY: {message}", args, **kwargs)


logging.setLoggerClass(CustomLogger)


class CustomFormatter(logging.Formatter):
    grey = "\x1b[38;21m"
    blue = "\x1b[34;21m"
    green = "\x1b[32;21m"
    yellow = "\x1b[33;21m"
    red = "\x1b[31;21m"
    magenta = "\x1b[35;21m"
    orange = "\x1b[38;5;214m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s (%(filename)s:%(lineno)d)"

    FORMATS = {
        logging.DEBUG: grey + fmt + reset,
        logging.INFO: grey + fmt + reset,
        logging.WARNING: orange + fmt + reset,
        logging.ERROR: red + fmt + reset,
        logging.CRITICAL: bold_red + fmt + reset,
        CustomLogger.ALLOCATION_LEVEL_NUM: blue + fmt + reset,
        CustomLogger.UNDO_LEVEL_NUM: yellow + fmt + reset,
        CustomLogger.PAYMENT_LEVEL_NUM: green + fmt + reset,
        CustomLogger.RECONCILE_LEVEL_NUM: grey + fmt + reset,
        CustomLogger.INSUFFICIENT_QUANTITY_NUM: magenta + fmt + reset,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        formatter = logging.Formatter(log_fmt, "%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


class LoggerManager:
    _instance = None
    _is_initialized = False

    def __new__(cls, *args, **kwargs):
        if not cls._instance:
            cls._instance = super(LoggerManager, cls).__new__(cls)
        return cls._instance

    def __init__(self, config, log_dir=None):
        if not self._is_initialized:
            self._log_level = config.get('log_level', logging.INFO)
            self.log_dir = log_dir or "logs"
            self.loggers = {}
            self.setup_logging()
            self._is_initialized = True

    @classmethod
    def reset(cls):
        """Drop the singleton so the next construction starts fresh (used by tests)."""
        if cls._instance is not None:
            for logger in cls._instance.loggers.values():
                for handler in list(logger.handlers):
                    handler.close()
                    logger.removeHandler(handler)
        cls._instance = None
        cls._is_initialized = False

    @property
    def log_level(self):
        return self._log_level

    def setup_logging(self):
        self.setup_logger('ledger_logger', 'ledger')
        self.setup_logger('payment_logger', 'payments')
        self.setup_logger('reconcile_logger', 'reconcile')

    def setup_logger(self, logger_name, subfolder):
        log_path = os.path.join(self.log_dir, subfolder)
        os.makedirs(log_path, exist_ok=True)

        log_file = os.path.join(log_path, f"{logger_name}.log")
        logger = CustomLogger(logger_name)
        logger.setLevel(logging.DEBUG)  # File will always capture everything

        if logger.hasHandlers():
            logger.handlers.clear()

        # ✅ Console Handler → INFO+ unless the operator asks for --verbose
        console_handler = logging.StreamHandler()
        console_handler.setLevel(self._log_level)
        console_handler.setFormatter(CustomFormatter())
        logger.addHandler(console_handler)

        # ✅ File Handler → full DEBUG trail of every ledger mutation
        file_handler = TimedRotatingFileHandler(
            log_file, when="midnight", interval=1, backupCount=7
        )
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s (%(filename)s:%(lineno)d)"
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

        self.loggers[logger_name] = logger
        self.setup_sqlalchemy_logging(logging.WARNING)

    def get_logger(self, logger_name):
        return self.loggers.get(logger_name)

    @staticmethod
    def setup_sqlalchemy_logging(level=logging.WARNING):
        sqlalchemy_logger = logging.getLogger('sqlalchemy.engine')
        sqlalchemy_logger.setLevel(level)

        if sqlalchemy_logger.hasHandlers():
            sqlalchemy_logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(CustomFormatter())
        console_handler.setLevel(level)
        sqlalchemy_logger.addHandler(console_handler)
