# -*- coding: utf-8 -*-
"""Настройки логирования: все логгеры app.* пишут в logs/app.log"""
import logging
import os

LOG_DIR = os.environ.get("LOG_DIR", "logs")
os.makedirs(LOG_DIR, exist_ok=True)

# Один общий FileHandler без ротации (избегаем ошибок переименования на Windows)
file_handler = logging.FileHandler(os.path.join(LOG_DIR, "app.log"), encoding="utf-8")
file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

app_logger = logging.getLogger("app")
app_logger.setLevel(logging.INFO)
# хендлер только у корневого "app": дочерние логгеры доходят до него через propagate
if file_handler.baseFilename not in {getattr(h, "baseFilename", None) for h in app_logger.handlers}:
    app_logger.addHandler(file_handler)

auth_logger = app_logger.getChild("auth")
releases_logger = app_logger.getChild("releases")
storage_logger = app_logger.getChild("storage")
devices_logger = app_logger.getChild("devices")
notifications_logger = app_logger.getChild("notifications")
