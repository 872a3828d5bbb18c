# src/main.py
import uvicorn
import sys

import config_manager


def start_proxy():
    """启动缓存代理服务器"""
    config = config_manager.load_config()
    print("--- Starting VOD Cache Proxy ---")
    print(f"Server running on http://0.0.0.0:{config.port}")
    uvicorn.run("proxy_server:create_app", factory=True, host="0.0.0.0", port=config.port)


if __name__ == "__main__":
    if len(sys.argv) == 1 or sys.argv[1] == "proxy":
        start_proxy()
    else:
        print(f"Unknown command: {sys.argv[1]}")
        print("Available commands: proxy")
