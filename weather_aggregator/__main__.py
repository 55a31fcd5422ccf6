"""
Weather Aggregator 主程序入口

使用方式:
    python -m weather_aggregator --port 4567 --data-file data/weather_snapshot.json
    或
    weather-aggregator --config config.yaml
"""

from weather_aggregator.main import cli

if __name__ == "__main__":
    cli()
