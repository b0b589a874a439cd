"""命令行入口模块 - Typer 应用定义在 commands.py。"""
