from aiq.cli import main

raise SystemExit(main())
