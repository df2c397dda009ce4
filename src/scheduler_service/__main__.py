import sys

from scheduler_service.main import main

sys.exit(main())
