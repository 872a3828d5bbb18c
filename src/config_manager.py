# src/config_manager.py

import json
import os
from pathlib import Path
from models import AppConfig

# 定义配置文件的路径
CONFIG_DIR = Path(__file__).parent.parent / "config"
CONFIG_FILE_PATH = CONFIG_DIR / "config.json"

# 部署时常用环境变量覆盖配置文件中的值
ENV_OVERRIDES = {
    "PORT": "port",
    "LOG_LEVEL": "log_level",
    "DATA_DIR": "data_dir",
    "CACHE_TYPE": "cache_type",
    "IMAGE_CACHE_DIR": "image_cache_dir",
    "REMOTE_DB_URL": "remote_db_url",
    "ACCESS_PASSWORD": "access_password",
    "TMDB_API_KEY": "tmdb_api_key",
    "TMDB_PROXY_URL": "tmdb_proxy_url",
}


def _apply_env_overrides(data: dict) -> dict:
    for env_name, field in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            data[field] = value
    return data


def load_config(config_path: Path = CONFIG_FILE_PATH) -> AppConfig:
    """
    加载配置文件。如果目录或文件不存在，则使用默认值自动创建。
    环境变量优先于文件内容。
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)

        if not config_path.is_file():
            print("Config file not found. Creating a new one with default values.")
            default_config = AppConfig()
            save_config(default_config, config_path)
            return AppConfig.model_validate(_apply_env_overrides(default_config.model_dump()))

        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return AppConfig.model_validate(_apply_env_overrides(data))

    except Exception as e:
        print(f"Error loading or parsing config file: {e}. Returning a temporary default config.")
        return AppConfig()


def save_config(config: AppConfig, config_path: Path = CONFIG_FILE_PATH):
    """
    将配置对象安全地保存到文件。
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w', encoding='utf-8') as f:
            f.write(config.model_dump_json(indent=4))
        print(f"Configuration successfully saved to {config_path}")
    except OSError as e:
        print(f"Error saving config file: {e}")


def data_dir(config: AppConfig) -> Path:
    return Path(config.data_dir) if config.data_dir else CONFIG_DIR


def image_cache_dir(config: AppConfig) -> Path:
    if config.image_cache_dir:
        return Path(config.image_cache_dir)
    return data_dir(config) / "cache" / "images"
