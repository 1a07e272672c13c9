from vmharness.cli import main

raise SystemExit(main())
