"""
Configuration module for the task scheduler.
Loads settings from environment variables or .env file.
任务调度器配置模块。
从环境变量或 .env 文件加载所有配置项。
"""

import os
from dotenv import load_dotenv

load_dotenv()  # 自动读取项目根目录的 .env 文件（若存在），优先级低于系统环境变量

# --- LLM API Configuration ---
# --- LLM API 配置 ---
# Only the reference agents under agents/ use these; the dag core never does.
# 仅 agents/ 下的参考协作者使用；dag 核心不依赖 LLM。
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://api.deepseek.com/v1")   # OpenAI-compatible API base URL / OpenAI 兼容接口地址
LLM_API_KEY = os.getenv("LLM_API_KEY", "")                                 # API key / API 密钥
LLM_MODEL = os.getenv("LLM_MODEL", "deepseek-chat")                        # Model name / 模型名称

# --- Execution ---
# --- 执行参数 ---
MAX_CONCURRENT_TASKS = int(os.getenv("MAX_CONCURRENT_TASKS", "3"))  # 队列同时运行的最大任务数
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "2"))                    # 验证失败后最多修复重试次数
TASK_TIMEOUT_MS = float(os.getenv("TASK_TIMEOUT_MS", "0"))          # 单次执行超时（毫秒），0 表示不限制

# --- Quality ---
# --- 质量控制 ---
VALIDATION_THRESHOLD = float(os.getenv("VALIDATION_THRESHOLD", "70"))  # 验证通过的最低评分（0~100）

# --- Planning ---
# --- 规划 ---
MAX_TASKS_PER_PLAN = int(os.getenv("MAX_TASKS_PER_PLAN", "8"))  # 单个计划最多任务数

# --- Observability ---
# --- 可观测性 ---
AUDIT_ENABLED = os.getenv("AUDIT_ENABLED", "false").lower() == "true"  # 是否对执行者调用做审计日志
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()                     # 默认日志级别（-v 覆盖为 DEBUG）
